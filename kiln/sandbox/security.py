"""Policy checks for the sandbox boundary.

Command allow-listing by glob pattern and workspace path restriction.
"""

from __future__ import annotations

import re
import shlex
from pathlib import Path

from kiln.errors import SandboxPolicyError

# Command and process substitution run code the allow-list never sees
_SUBSTITUTION = re.compile(r"`|\$\(|[<>]\(")
_SEPARATOR_CHARS = frozenset(";|()")


def match_glob(text: str, pattern: str) -> bool:
    """Match text against a simple glob pattern where ``*`` matches anything."""
    escaped = re.sub(r"[.+?^${}()|[\]\\]", lambda m: "\\" + m.group(), pattern)
    regex_str = f"^{escaped.replace('*', '.*')}$"
    return bool(re.match(regex_str, text, re.DOTALL))


def _is_separator(token: str) -> bool:
    """Whether a shlex punctuation token ends a simple command.

    ``&`` alone (or ``&&``) separates; ``>&``, ``&>`` and friends are
    redirections and stay with their command.
    """
    if not token or any(c not in "();<>|&" for c in token):
        return False
    if _SEPARATOR_CHARS.intersection(token):
        return True
    return "&" in token and "<" not in token and ">" not in token


def split_command(command: str) -> list[str] | None:
    """Split a shell command line into simple commands.

    Splits on newlines, ``;``, ``&``, ``&&``, ``||``, ``|`` and
    parentheses. Returns None if the line cannot be tokenized (for
    example an unbalanced quote).
    """
    segments: list[str] = []
    for line in command.splitlines():
        lexer = shlex.shlex(line, posix=True, punctuation_chars=True)
        lexer.whitespace_split = True
        # bash only starts a comment at a word boundary
        lexer.commenters = ""
        try:
            tokens = list(lexer)
        except ValueError:
            return None
        current: list[str] = []
        for token in tokens:
            if _is_separator(token):
                if current:
                    segments.append(" ".join(current))
                current = []
            else:
                current.append(token)
        if current:
            segments.append(" ".join(current))
    return segments


def evaluate_allowlist(command: str, patterns: list[str]) -> bool:
    """Whether every simple command in the line matches an allow-list pattern.

    Patterns support ``*`` wildcards (``git *``, ``pytest *``, ``*``).
    A bare ``*`` pattern allows anything. Otherwise chained commands are
    checked one by one, and command substitution is refused outright.
    An empty allow-list permits nothing.
    """
    if "*" in patterns:
        return True
    trimmed = command.strip()
    if not trimmed or _SUBSTITUTION.search(trimmed):
        return False
    segments = split_command(trimmed)
    if not segments:
        return False
    return all(any(match_glob(seg, p) for p in patterns) for seg in segments)


def check_command(command: str, patterns: list[str]) -> None:
    """Raise SandboxPolicyError if the command is not allow-listed."""
    if not evaluate_allowlist(command, patterns):
        raise SandboxPolicyError(f"Command not allowed by sandbox policy: {command[:200]}")


def resolve_within(path_str: str, workspace: Path) -> Path:
    """Resolve a path against the workspace, refusing anything outside it.

    Relative paths are taken from the workspace root; absolute paths must
    already point inside it. Symlinks are resolved before the check.
    """
    root = workspace.resolve()
    candidate = Path(path_str)
    target = candidate.resolve() if candidate.is_absolute() else (root / candidate).resolve()

    if not target.is_relative_to(root):
        raise SandboxPolicyError(
            f"Path '{path_str}' is outside workspace '{workspace}'. "
            "Only paths within the workspace directory are allowed."
        )
    return target
