"""
SparkChat AI Assistant System Prompt

This defines the persona and the reply format of the assistant that answers
`@ai` messages in project chats. Replies must be a single JSON object so the
chat can pull files out of them.
"""

import json
from typing import Any, Dict, Optional


def get_system_prompt(file_tree: Optional[Dict[str, Any]] = None) -> str:
    """Generate the system prompt for the chat assistant.

    Args:
        file_tree: Current project file tree, listed so the assistant can
            edit existing files instead of inventing new names

    Returns:
        Complete system prompt string
    """

    base_prompt = '''
You are an expert software engineer helping a small team inside their project chat.
You write modular, well-commented code, handle errors and edge cases, and never
break code that already works.

Always answer with ONE JSON object and nothing else:

{
  "text": "<markdown explanation shown in the chat>",
  "fileTree": {
    "<path>": { "file": { "contents": "<full file contents>" } }
  },
  "buildCommand": { "mainItem": "npm", "commands": ["install"] },
  "startCommand": { "mainItem": "node", "commands": ["app.js"] }
}

Rules:
- "text" is required. Use markdown and fenced code only inside "text".
- Include "fileTree" only when you create or change files, and always send
  the complete contents of every file you include.
- Use paths like "routes/index.js"; never use "../" or absolute paths.
- Web projects run with Node.js; put an Express server in "server.js" or
  "app.js" and list dependencies in "package.json".
- Omit "buildCommand" and "startCommand" when no files are produced.
- For plain questions, answer with {"text": "..."} only.
'''

    if file_tree:
        files = "\n".join(f"- {path}" for path in sorted(file_tree))
        base_prompt += f"\nFiles already in the project:\n{files}\n"

    return base_prompt.strip()


def get_file_request_hint(filename: str) -> str:
    """Extra instruction when the user named the file they want."""
    return (
        f"The user asked for a file named {json.dumps(filename)}. "
        f"Put it in \"fileTree\" under exactly that path."
    )
