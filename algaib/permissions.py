"""Permission prompt detection for agent output streams.

Agents running inside a terminal ask for approval with plain-text prompts.
PermissionScanner classifies an output chunk against an ordered table of
phrase patterns. Rules are evaluated in order and the first match wins, so
specific prompt types must come before the generic catch-alls.

New agent CLIs add their own vocabulary with PermissionScanner.register().
"""

import re
import uuid
from dataclasses import dataclass

from algaib.models import PermissionRequest, PermissionType

# Characters of trailing context kept for display
RAW_TEXT_WINDOW = 500

_QUOTE = "[\"'`“”]"


@dataclass(frozen=True)
class PermissionRule:
    """Maps a prompt pattern to a permission type.

    A ``resource`` named group, when present in the pattern, captures the file
    path or command the prompt refers to.
    """

    name: str
    type: PermissionType
    pattern: re.Pattern[str]

    @classmethod
    def compile(cls, name: str, type: PermissionType, regex: str) -> "PermissionRule":
        return cls(name=name, type=type, pattern=re.compile(regex, re.IGNORECASE))


DEFAULT_RULES: tuple[PermissionRule, ...] = (
    PermissionRule.compile(
        "file_write",
        "file_write",
        rf"Do you want to (?:write|create)(?: to| file)?\s+{_QUOTE}?"
        rf"(?P<resource>[^\"'`“”?\n]+?){_QUOTE}?\s*\?",
    ),
    PermissionRule.compile(
        "file_edit",
        "file_edit",
        rf"Do you want to (?:edit|make this edit to|modify)\s+{_QUOTE}?"
        rf"(?P<resource>[^\"'`“”?\n]+?){_QUOTE}?\s*\?",
    ),
    PermissionRule.compile(
        "bash",
        "bash",
        rf"Do you want to (?:run|execute)(?: command)?\s+{_QUOTE}?"
        rf"(?P<resource>[^\"'`“”\n]+?){_QUOTE}?\s*\?",
    ),
    PermissionRule.compile("allow_action", "unknown", r"Allow this action\?"),
    PermissionRule.compile(
        "do_you_want", "unknown", r"Do you want to (?:allow|proceed)\b[^\n]*"
    ),
    PermissionRule.compile("press_enter", "unknown", r"Press Enter to allow"),
    PermissionRule.compile("yes_no_words", "unknown", r"\(y\)es.*?\(n\)o"),
    PermissionRule.compile("yes_no_brackets", "unknown", r"\[y/n\]"),
    PermissionRule.compile("yes_no_parens", "unknown", r"\(y/n\)"),
)

# Rules before this one are specific; register() inserts ahead of it by default
_FIRST_CATCH_ALL = "allow_action"


def _request_id() -> str:
    return f"perm-{uuid.uuid4().hex[:8]}"


class PermissionScanner:
    """Ordered rule table: chunk in, PermissionRequest (or None) out.

    The scanner holds no per-stream state. Deduplication of prompts while a
    request is outstanding is the session's job.
    """

    def __init__(self, rules: tuple[PermissionRule, ...] | list[PermissionRule] = DEFAULT_RULES):
        self._rules: list[PermissionRule] = list(rules)

    @property
    def rules(self) -> tuple[PermissionRule, ...]:
        return tuple(self._rules)

    def register(self, rule: PermissionRule, before: str | None = _FIRST_CATCH_ALL) -> None:
        """Add a rule.

        Args:
            rule: Rule to add
            before: Name of the rule to insert ahead of. Defaults to the first
                catch-all so new specific prompts win over generic ones. None
                or an unknown name appends the rule at the end.
        """
        names = [r.name for r in self._rules]
        if before is not None and before in names:
            self._rules.insert(names.index(before), rule)
        else:
            self._rules.append(rule)

    def scan(self, chunk: str) -> PermissionRequest | None:
        """Classify a chunk of (ANSI-stripped) output.

        Returns:
            PermissionRequest for the first matching rule, or None
        """
        if not chunk:
            return None

        for rule in self._rules:
            match = rule.pattern.search(chunk)
            if match is None:
                continue

            resource = match.groupdict().get("resource")
            description = resource.strip() if resource else match.group(0).strip()
            return PermissionRequest(
                id=_request_id(),
                type=rule.type,
                description=description,
                raw_text=chunk[-RAW_TEXT_WINDOW:],
            )

        return None


_default_scanner = PermissionScanner()


def scan(chunk: str) -> PermissionRequest | None:
    """Scan a chunk with the default rule table."""
    return _default_scanner.scan(chunk)
