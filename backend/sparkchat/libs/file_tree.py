"""File tree reconciliation for AI chat messages.

AI replies arrive in whatever shape the model felt like producing. This module
turns them into the canonical file tree stored on a project:

    {"index.html": {"file": {"contents": "<!DOCTYPE html>..."}}}

Supported shapes, checked in this order and merged (later shapes win on the
same path):

1. a JSON object with a ``fileTree`` mapping (nested ``directory`` nodes are
   flattened to ``dir/name`` paths)
2. JSON keys named after a file type (``html``, ``css``, ``py``, ...) whose
   value holds a ``file`` node
3. a JSON ``files`` array of ``{"name", "content"}`` objects
4. JSON keys that look like file names (contain a dot)
5. for non-JSON text, fenced code blocks that can be tied to a file name

Usage:
    from sparkchat.libs.file_tree import extract_file_tree, merge_file_trees

    new_files = extract_file_tree(ai_reply)
    if new_files:
        tree = merge_file_trees(project_tree, new_files)
"""

import json
import logging
import re
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

FileTree = Dict[str, Dict[str, Any]]


class InvalidFileTreeError(ValueError):
    """Raised when a client-supplied file tree can't be stored."""


# File type keys → file name used for them
FILE_TYPE_NAMES = {
    "html": "index.html",
    "css": "style.css",
    "javascript": "script.js",
    "js": "script.js",
    "ts": "script.ts",
    "json": "data.json",
    "md": "README.md",
    "py": "main.py",
    "java": "Main.java",
    "c": "main.c",
    "cpp": "main.cpp",
}

EXTENSION_LANGUAGES = {
    "js": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "html": "html",
    "css": "css",
    "json": "json",
    "py": "python",
    "java": "java",
    "c": "c",
    "cpp": "cpp",
    "md": "markdown",
}

# Extensions recognised when guessing file names from free text
_KNOWN_EXTENSIONS = sorted(
    set(EXTENSION_LANGUAGES)
    | {"txt", "yml", "yaml", "toml", "ini", "cfg", "env", "sh", "sql", "xml",
       "svg", "scss", "sass", "less", "mjs", "cjs", "vue", "go", "rs", "rb",
       "php", "h", "hpp"},
    key=len,
    reverse=True,
)

FILENAME_PATTERN = re.compile(
    r"(?<![\w/.-])((?:[\w-]+/)*[\w-]*\w(?:\.[\w-]+)*\.(?:"
    + "|".join(_KNOWN_EXTENSIONS)
    + r"))(?![\w-])"
)

FENCED_BLOCK_PATTERN = re.compile(r"```([^\n`]*)\n(.*?)```", re.DOTALL)

FIRST_LINE_NAME_PATTERN = re.compile(
    r"^\s*(?://|#|<!--|/\*|--)\s*(?:file(?:name)?\s*:\s*)?(\S+?)\s*(?:-->|\*/)?\s*$",
    re.IGNORECASE,
)

# Phrases users type when they want the assistant to produce a file
FILE_REQUEST_PATTERNS = [
    re.compile(r"create\s+(?:a|an)?\s+file\s+(?:called|named)?\s+[\"']?([a-zA-Z0-9_\-.]+)[\"']?", re.IGNORECASE),
    re.compile(r"make\s+(?:a|an)?\s+(?:new)?\s+file\s+(?:called|named)?\s+[\"']?([a-zA-Z0-9_\-.]+)[\"']?", re.IGNORECASE),
    re.compile(r"generate\s+(?:a|an)?\s+file\s+(?:called|named)?\s+[\"']?([a-zA-Z0-9_\-.]+)[\"']?", re.IGNORECASE),
    re.compile(r"give\s+(?:me)?\s+(?:a|an)?\s+(?:code|file)\s+for\s+[\"']?([a-zA-Z0-9_\-.]+)[\"']?", re.IGNORECASE),
    re.compile(r"write\s+(?:a|an)?\s+(?:code|file)\s+for\s+[\"']?([a-zA-Z0-9_\-.]+)[\"']?", re.IGNORECASE),
]


def file_node(contents: str) -> Dict[str, Any]:
    """Build a file tree leaf."""
    return {"file": {"contents": contents}}


def is_safe_path(path: str) -> bool:
    """Relative, non-empty and without parent directory segments."""
    if not isinstance(path, str) or not path.strip():
        return False
    if path.startswith(("/", "\\")) or "\\" in path:
        return False
    return all(part not in ("", ".", "..") for part in path.split("/"))


def _flatten(tree: Dict[str, Any], prefix: str, out: FileTree, strict: bool) -> None:
    """Flatten nested ``directory`` nodes into ``dir/name`` paths."""
    for name, node in tree.items():
        path = f"{prefix}{name}"
        if isinstance(node, dict) and isinstance(node.get("directory"), dict):
            _flatten(node["directory"], f"{path}/", out, strict)
            continue

        contents = None
        if isinstance(node, dict) and isinstance(node.get("file"), dict):
            contents = node["file"].get("contents", "")
        elif isinstance(node, str) and not strict:
            contents = node

        if contents is None or (strict and not isinstance(contents, str)):
            if strict:
                raise InvalidFileTreeError(f"Invalid file node for '{path}'")
            logger.debug("Skipping non-file node %s", path)
            continue

        if not is_safe_path(path):
            if strict:
                raise InvalidFileTreeError(f"Invalid file path '{path}'")
            logger.warning("Dropping unsafe file path from AI message: %s", path)
            continue

        out[path] = file_node(contents if isinstance(contents, str) else str(contents))


def normalize_file_tree(tree: Any) -> FileTree:
    """Validate a client-supplied file tree and flatten its directories.

    Raises:
        InvalidFileTreeError: if the tree isn't a mapping of safe paths to
            ``{"file": {"contents": str}}`` / ``{"directory": {...}}`` nodes
    """
    if not isinstance(tree, dict):
        raise InvalidFileTreeError("File tree must be an object")
    out: FileTree = {}
    _flatten(tree, "", out, strict=True)

    # "lib.py" and "lib.py/main.py" can't both exist on disk
    for path in out:
        parts = path.split("/")
        for depth in range(1, len(parts)):
            parent = "/".join(parts[:depth])
            if parent in out:
                raise InvalidFileTreeError(f"'{parent}' is both a file and a directory")
    return out


def _tree_from_json(parsed: Dict[str, Any]) -> FileTree:
    new_tree: FileTree = {}

    # Case 1: explicit fileTree
    if isinstance(parsed.get("fileTree"), dict):
        _flatten(parsed["fileTree"], "", new_tree, strict=False)

    # Case 2: file type keys
    for file_type, filename in FILE_TYPE_NAMES.items():
        value = parsed.get(file_type)
        if isinstance(value, dict) and value.get("file"):
            _flatten({filename: value}, "", new_tree, strict=False)

    # Case 3: files array
    files = parsed.get("files")
    if isinstance(files, list):
        for file_obj in files:
            if isinstance(file_obj, dict) and file_obj.get("name") and file_obj.get("content"):
                _flatten({str(file_obj["name"]): str(file_obj["content"])}, "", new_tree, strict=False)

    # Case 4: keys that look like file names
    for key, value in parsed.items():
        if "." not in key or not value:
            continue
        if isinstance(value, str):
            _flatten({key: value}, "", new_tree, strict=False)
        elif isinstance(value, dict) and isinstance(value.get("file"), dict) and value["file"].get("contents"):
            _flatten({key: value}, "", new_tree, strict=False)

    return new_tree


def _name_from_info(info: str) -> Optional[str]:
    for token in re.split(r"[\s{}]+", info.strip()):
        token = token.strip("\"'")
        if "=" in token:
            token = token.split("=", 1)[1].strip("\"'")
        match = FILENAME_PATTERN.fullmatch(token)
        if match:
            return match.group(1)
    return None


def _tree_from_fenced_blocks(text: str) -> FileTree:
    new_tree: FileTree = {}
    for match in FENCED_BLOCK_PATTERN.finditer(text):
        info, body = match.group(1), match.group(2)

        name = _name_from_info(info)

        if name is None:
            first_line, _, rest = body.partition("\n")
            comment = FIRST_LINE_NAME_PATTERN.match(first_line)
            if comment and FILENAME_PATTERN.fullmatch(comment.group(1)):
                name = comment.group(1)
                body = rest

        if name is None:
            preceding = text[: match.start()].rstrip().splitlines()
            if preceding:
                candidates = FILENAME_PATTERN.findall(preceding[-1])
                if candidates:
                    name = candidates[-1]

        if name is None:
            logger.debug("Skipping unnamed code block (%s)", info.strip() or "no language")
            continue

        _flatten({name: body}, "", new_tree, strict=False)
    return new_tree


def extract_file_tree(message: Any) -> Optional[FileTree]:
    """Extract files from an AI message body.

    Args:
        message: raw message text (usually JSON) or an already-parsed dict

    Returns:
        New file tree entries, or None if the message carries no files
    """
    parsed: Any
    if isinstance(message, dict):
        parsed = message
    elif isinstance(message, str):
        try:
            parsed = json.loads(message)
        except json.JSONDecodeError:
            logger.debug("Message is not valid JSON, looking for code blocks")
            new_tree = _tree_from_fenced_blocks(message)
            return new_tree or None
    else:
        return None

    if not isinstance(parsed, dict):
        return None

    new_tree = _tree_from_json(parsed)
    if new_tree:
        logger.info("Extracted %d file(s) from AI message: %s", len(new_tree), ", ".join(new_tree))
        return new_tree
    return None


def merge_file_trees(base: Optional[FileTree], incoming: Optional[FileTree]) -> FileTree:
    """Merge two trees; files from ``incoming`` replace those in ``base``."""
    return {**(base or {}), **(incoming or {})}


def get_file_contents(tree: Optional[FileTree], filename: str) -> str:
    """Contents of a file in the tree, or "" when it is missing."""
    node = (tree or {}).get(filename)
    if not isinstance(node, dict) or not isinstance(node.get("file"), dict):
        return ""
    return node["file"].get("contents") or ""


def language_from_filename(filename: str) -> str:
    """Editor language for a file name."""
    extension = filename.rsplit(".", 1)[-1].lower()
    return EXTENSION_LANGUAGES.get(extension, "plaintext")


def extract_file_request(message: str) -> Optional[str]:
    """File name the user asks for ("create a file called app.js"), if any."""
    if not message:
        return None
    for pattern in FILE_REQUEST_PATTERNS:
        match = pattern.search(message)
        if match and match.group(1):
            return match.group(1)
    return None


def ai_message_text(message: str) -> str:
    """Text to show for an AI message: its ``text`` field, else the raw body."""
    try:
        parsed = json.loads(message)
    except (json.JSONDecodeError, TypeError):
        return message
    if isinstance(parsed, dict) and parsed.get("text"):
        return str(parsed["text"])
    return message
