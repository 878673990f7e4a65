"""Tests for the flat key/value document format."""

import pytest

from batchflow import properties
from batchflow.errors import InvalidArgumentError


class TestLoads:
    """Tests for parsing documents."""

    def test_separators(self):
        """'=', ':' and whitespace all separate keys from values."""
        text = "a = 1\nb:2\nc 3\nd=\n"
        assert properties.loads(text) == {"a": "1", "b": "2", "c": "3", "d": ""}

    def test_comments_and_blank_lines(self):
        """'#' and '!' lines and blank lines are ignored."""
        text = "# comment\n! other\n\n   \nkey = value\n"
        assert properties.loads(text) == {"key": "value"}

    def test_continuation(self):
        """A trailing backslash joins the next line (leading whitespace dropped)."""
        text = "key = one, \\\n      two\n"
        assert properties.loads(text) == {"key": "one, two"}

    def test_escaped_backslash_is_not_continuation(self):
        """An even number of trailing backslashes ends the line."""
        text = "key = path\\\\\nnext = 1\n"
        assert properties.loads(text) == {"key": "path\\", "next": "1"}

    def test_escapes(self):
        """Standard escapes and unicode escapes are decoded."""
        text = "key = tab\\there\\nline \\u00e9 \\= \\:\n"
        assert properties.loads(text)["key"] == "tab\there\nline é = :"

    def test_escaped_separator_in_key(self):
        """Escaped separators belong to the key."""
        assert properties.loads("a\\=b = c\n") == {"a=b": "c"}

    def test_trailing_whitespace_kept_in_value(self):
        """Only leading whitespace of a value is dropped."""
        assert properties.loads("key =  value  \n") == {"key": "value  "}

    def test_later_definitions_win(self):
        """Repeated keys keep the last value."""
        assert properties.loads("a = 1\na = 2\n") == {"a": "2"}

    def test_malformed_unicode_escape(self):
        """A truncated \\u escape is rejected."""
        with pytest.raises(InvalidArgumentError):
            properties.loads("key = \\u12\n")

    def test_none(self):
        """None text is rejected."""
        with pytest.raises(InvalidArgumentError):
            properties.loads(None)


class TestDumps:
    """Tests for rendering documents."""

    def test_sorted_output(self):
        """Keys are written in sorted order, one per line."""
        assert properties.dumps({"b": "2", "a": "1"}) == "a = 1\nb = 2\n"

    def test_header(self):
        """A header becomes comment lines."""
        text = properties.dumps({"a": "1"}, header="generated\nby test")
        assert text.startswith("# generated\n# by test\n")

    @pytest.mark.parametrize("value", [
        "",
        " leading space",
        "trailing space ",
        "#not a comment",
        "!not a comment",
        "multi\nline",
        "back\\slash",
        "a = b : c",
        "tab\tand\rreturn",
        "unicode é \u2028 separator",
    ])
    def test_values_survive(self, value):
        """Awkward values are escaped so they read back unchanged."""
        mapping = {"key": value}
        assert properties.loads(properties.dumps(mapping)) == mapping

    @pytest.mark.parametrize("key", ["a b", "a=b", "a:b", "#a", "!a", "a\\b"])
    def test_keys_survive(self, key):
        """Awkward keys are escaped so they read back unchanged."""
        mapping = {key: "v"}
        assert properties.loads(properties.dumps(mapping)) == mapping


class TestFiles:
    """Tests for reading and writing files."""

    def test_write_then_read(self, tmp_path):
        """Documents round-trip through files as UTF-8."""
        path = tmp_path / "batch.properties"
        properties.write(path, {"flow.a.blockerIds": "", "name": "é"})
        assert properties.read(path) == {"flow.a.blockerIds": "", "name": "é"}


class TestPrefixHelpers:
    """Tests for create_prefix_map and get_child_keys."""

    doc = {
        "flow.a.blockerIds": "",
        "flow.a.main.0000.id": "x",
        "flow.ab.blockerIds": "",
        "other": "1",
    }

    def test_create_prefix_map(self):
        """Entries under the prefix are returned with the prefix stripped."""
        assert properties.create_prefix_map(self.doc, "flow.a.") == {
            "blockerIds": "",
            "main.0000.id": "x",
        }

    def test_create_prefix_map_none(self):
        """None arguments are rejected."""
        with pytest.raises(InvalidArgumentError):
            properties.create_prefix_map(None, "flow.")

    def test_get_child_keys(self):
        """Child keys are the prefix plus one segment."""
        assert properties.get_child_keys(self.doc, "flow.", ".") == {"flow.a", "flow.ab"}
