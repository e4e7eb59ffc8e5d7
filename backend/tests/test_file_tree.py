import json

import pytest

from sparkchat.libs.file_tree import (
    InvalidFileTreeError,
    ai_message_text,
    extract_file_request,
    extract_file_tree,
    file_node,
    get_file_contents,
    language_from_filename,
    merge_file_trees,
    normalize_file_tree,
)


def contents(tree, path):
    return tree[path]["file"]["contents"]


class TestExtractFromJson:
    def test_file_tree_object(self):
        message = json.dumps({
            "text": "Created an app",
            "fileTree": {"app.js": {"file": {"contents": "console.log('hi')"}}},
        })

        assert extract_file_tree(message) == {"app.js": file_node("console.log('hi')")}

    def test_nested_directories_are_flattened(self):
        message = json.dumps({
            "fileTree": {
                "routes": {"directory": {
                    "index.js": {"file": {"contents": "module.exports = {}"}},
                    "api": {"directory": {"users.js": {"file": {"contents": "// users"}}}},
                }},
            },
        })

        tree = extract_file_tree(message)

        assert set(tree) == {"routes/index.js", "routes/api/users.js"}

    def test_file_type_keys(self):
        message = json.dumps({
            "html": {"file": {"contents": "<h1>Hi</h1>"}},
            "css": {"file": {"contents": "h1 { color: red; }"}},
            "py": {"file": {"contents": "print('hi')"}},
            "js": "not a file node",
        })

        tree = extract_file_tree(message)

        assert set(tree) == {"index.html", "style.css", "main.py"}
        assert contents(tree, "style.css") == "h1 { color: red; }"

    def test_files_array(self):
        message = json.dumps({
            "files": [
                {"name": "a.txt", "content": "A"},
                {"name": "b.txt", "content": ""},
                {"content": "orphan"},
            ],
        })

        assert extract_file_tree(message) == {"a.txt": file_node("A")}

    def test_keys_that_look_like_file_names(self):
        message = json.dumps({
            "server.js": "const express = require('express')",
            "package.json": {"file": {"contents": "{}"}},
            "readme": "no extension",
        })

        tree = extract_file_tree(message)

        assert set(tree) == {"server.js", "package.json"}

    def test_unsafe_paths_are_dropped(self):
        message = json.dumps({"fileTree": {
            "../escape.js": {"file": {"contents": "x"}},
            "ok.js": {"file": {"contents": "y"}},
        }})

        assert set(extract_file_tree(message)) == {"ok.js"}

    def test_text_only_reply(self):
        assert extract_file_tree(json.dumps({"text": "Just an answer"})) is None

    def test_accepts_parsed_dict(self):
        assert extract_file_tree({"fileTree": {"a.py": {"file": {"contents": "1"}}}}) == {"a.py": file_node("1")}

    @pytest.mark.parametrize("message", [None, 42, "[1, 2, 3]", ""])
    def test_nothing_to_extract(self, message):
        assert extract_file_tree(message) is None


class TestExtractFromCodeBlocks:
    def test_name_in_info_string(self):
        message = "Here you go:\n```js app.js\nconsole.log(1)\n```\n"

        assert extract_file_tree(message) == {"app.js": file_node("console.log(1)\n")}

    def test_name_in_first_line_comment(self):
        message = "```python\n# file: tools/cli.py\nimport sys\n```"

        tree = extract_file_tree(message)

        assert contents(tree, "tools/cli.py") == "import sys\n"

    def test_name_on_preceding_line(self):
        message = "Save this as `index.html`:\n\n```html\n<h1>Hello</h1>\n```"

        assert set(extract_file_tree(message)) == {"index.html"}

    def test_unnamed_blocks_are_skipped(self):
        message = "Run this:\n```bash\nnpm start\n```"

        assert extract_file_tree(message) is None

    def test_plain_text(self):
        assert extract_file_tree("not json at all") is None


class TestNormalize:
    def test_valid_tree(self):
        tree = {"lib": {"directory": {"util.js": {"file": {"contents": ""}}}}}

        assert normalize_file_tree(tree) == {"lib/util.js": file_node("")}

    @pytest.mark.parametrize("tree", [
        [],
        {"/etc/passwd": {"file": {"contents": "x"}}},
        {"a/../../b.js": {"file": {"contents": "x"}}},
        {"app.js": "raw string"},
        {"app.js": {"file": {"contents": 5}}},
        {"lib.py": {"file": {"contents": "x"}}, "lib.py/main.py": {"file": {"contents": "y"}}},
        {"src": {"file": {"contents": "x"}}, "src/a/b.js": {"file": {"contents": "y"}}},
    ])
    def test_invalid_trees(self, tree):
        with pytest.raises(InvalidFileTreeError):
            normalize_file_tree(tree)


def test_merge_prefers_incoming():
    base = {"a.js": file_node("old"), "b.js": file_node("keep")}
    merged = merge_file_trees(base, {"a.js": file_node("new")})

    assert contents(merged, "a.js") == "new"
    assert contents(merged, "b.js") == "keep"
    assert contents(base, "a.js") == "old"
    assert merge_file_trees(None, None) == {}


def test_get_file_contents():
    tree = {"a.js": file_node("x"), "broken": {}}

    assert get_file_contents(tree, "a.js") == "x"
    assert get_file_contents(tree, "missing.js") == ""
    assert get_file_contents(tree, "broken") == ""
    assert get_file_contents(None, "a.js") == ""


@pytest.mark.parametrize("filename,language", [
    ("app.js", "javascript"),
    ("App.TSX", "typescript"),
    ("index.html", "html"),
    ("main.py", "python"),
    ("README.md", "markdown"),
    ("Makefile", "plaintext"),
    ("data.csv", "plaintext"),
])
def test_language_from_filename(filename, language):
    assert language_from_filename(filename) == language


@pytest.mark.parametrize("message,expected", [
    ("@ai create a file called app.js", "app.js"),
    ("please make a new file named 'index.html'", "index.html"),
    ("generate a file named server.js with express", "server.js"),
    ("give me a code for style.css", "style.css"),
    ("Write a file for utils.py", "utils.py"),
    ("what does this error mean?", None),
    ("", None),
])
def test_extract_file_request(message, expected):
    assert extract_file_request(message) == expected


def test_ai_message_text():
    assert ai_message_text(json.dumps({"text": "Hello"})) == "Hello"
    assert ai_message_text("plain") == "plain"
    assert ai_message_text(json.dumps({"fileTree": {}})) == json.dumps({"fileTree": {}})
