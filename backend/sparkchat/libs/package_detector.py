"""Package detection utilities for Python and JavaScript code.

This module analyzes project files to detect third-party packages that must be
installed before the sandbox can start them. Import names are mapped to their
package names.
"""

import re
import sys
from typing import Dict, List, Set


# Mapping of import names to package names
# e.g., "cv2" imports from "opencv-python" package
PYTHON_PACKAGE_MAPPING = {
    "cv2": "opencv-python",
    "PIL": "Pillow",
    "sklearn": "scikit-learn",
    "yaml": "pyyaml",
    "dotenv": "python-dotenv",
    "dateutil": "python-dateutil",
    "jwt": "pyjwt",
    "bs4": "beautifulsoup4",
    "psycopg2": "psycopg2-binary",
    "multipart": "python-multipart",
    "Crypto": "pycryptodome",
    "docx": "python-docx",
    "jose": "python-jose",
    "serial": "pyserial",
    "socketio": "python-socketio",
}

# Standard library modules that should NOT be installed
PYTHON_STDLIB = set(sys.stdlib_module_names)

# Built-in Node.js modules that should NOT be installed
NODE_BUILTINS = {
    "assert", "buffer", "child_process", "cluster", "crypto", "dgram", "dns",
    "domain", "events", "fs", "http", "https", "net", "os", "path", "punycode",
    "querystring", "readline", "repl", "stream", "string_decoder", "timers",
    "tls", "tty", "url", "util", "v8", "vm", "zlib", "worker_threads", "process",
}

JS_EXTENSIONS = (".js", ".mjs", ".cjs", ".jsx", ".ts", ".tsx")


def detect_python_packages(code: str) -> List[str]:
    """Extract Python package names from import statements.

    Args:
        code: Python source code

    Returns:
        List of package names that need to be installed

    Examples:
        >>> detect_python_packages("import pandas as pd")
        ['pandas']
        >>> detect_python_packages("from sklearn.model_selection import train_test_split")
        ['scikit-learn']
    """
    packages: Set[str] = set()

    # Match: import package / import package.sub as alias
    import_pattern = r'^\s*import\s+(\w+)'
    for match in re.finditer(import_pattern, code, re.MULTILINE):
        packages.add(match.group(1))

    # Match: from package import ... (relative imports start with a dot)
    from_pattern = r'^\s*from\s+(\w+)'
    for match in re.finditer(from_pattern, code, re.MULTILINE):
        packages.add(match.group(1))

    external_packages = [pkg for pkg in packages if pkg not in PYTHON_STDLIB]

    mapped_packages = [
        PYTHON_PACKAGE_MAPPING.get(pkg, pkg)
        for pkg in external_packages
    ]

    return sorted(set(mapped_packages))


def _npm_package_name(specifier: str) -> str:
    # '@radix-ui/react-dialog/x' → '@radix-ui/react-dialog', 'lodash/debounce' → 'lodash'
    if specifier.startswith('@'):
        parts = specifier.split('/')
        if len(parts) >= 2:
            return f"{parts[0]}/{parts[1]}"
        return specifier
    return specifier.split('/')[0]


def detect_npm_packages(code: str) -> List[str]:
    """Extract NPM package names from import and require statements.

    Args:
        code: JavaScript/TypeScript source code

    Returns:
        List of package names that need to be installed

    Examples:
        >>> detect_npm_packages("const express = require('express')")
        ['express']
        >>> detect_npm_packages("import { Chart } from 'recharts'")
        ['recharts']
    """
    packages: Set[str] = set()

    patterns = [
        r"from\s+['\"]([^'\"./][^'\"]*)['\"]",           # import x from 'pkg'
        r"import\s+['\"]([^'\"./][^'\"]*)['\"]",         # import 'pkg'
        r"require\(\s*['\"]([^'\"./][^'\"]*)['\"]\s*\)",  # require('pkg')
    ]
    for pattern in patterns:
        for match in re.finditer(pattern, code):
            specifier = match.group(1)
            if specifier.startswith('node:'):
                continue
            packages.add(_npm_package_name(specifier))

    external_packages = [pkg for pkg in packages if pkg not in NODE_BUILTINS]

    return sorted(set(external_packages))


def detect_packages_from_tree(file_tree: Dict[str, dict]) -> Dict[str, List[str]]:
    """Detect packages from every file of a project file tree.

    Args:
        file_tree: Mapping of path → ``{"file": {"contents": str}}``

    Returns:
        Dictionary with 'python' and 'npm' package lists

    Example:
        >>> detect_packages_from_tree({
        ...     'app.py': {'file': {'contents': 'import pandas'}},
        ...     'server.js': {'file': {'contents': "require('express')"}},
        ... })
        {'python': ['pandas'], 'npm': ['express']}
    """
    python_packages: Set[str] = set()
    npm_packages: Set[str] = set()

    for path, node in file_tree.items():
        contents = (node.get('file') or {}).get('contents') or ''

        if path.endswith('.py'):
            python_packages.update(detect_python_packages(contents))
        elif path.endswith(JS_EXTENSIONS):
            npm_packages.update(detect_npm_packages(contents))

    return {
        'python': sorted(python_packages),
        'npm': sorted(npm_packages)
    }
