from __future__ import annotations
"""Selection rules ("masks") and their persistence."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import json
import logging
from pathlib import Path
import re
from typing import Optional
import uuid

from .models import ObjectEntry, StorageTier, utcnow

LOGGER = logging.getLogger(__name__)


class InvalidPattern(ValueError):
    """Raised when a regex selection rule does not compile."""


class MatchMode(str, Enum):
    PREFIX = "Prefix"
    SUFFIX = "Suffix"
    CONTAINS = "Contains"
    REGEX = "Regex"

    def next(self) -> "MatchMode":
        members = list(MatchMode)
        return members[(members.index(self) + 1) % len(members)]

    def previous(self) -> "MatchMode":
        members = list(MatchMode)
        return members[(members.index(self) - 1) % len(members)]


def fold(text: str) -> str:
    """Return the canonical caseless form used for insensitive matching."""

    return text.casefold()


@dataclass(frozen=True)
class SelectionRule:
    """A pattern predicate over object keys.

    Rules never raise while matching: a regex that fails to compile makes
    the rule match nothing and is reported through :attr:`error`.

    Case-insensitive prefix, suffix and contains rules compare full Unicode
    case folds (``"ß"`` matches ``"SS"``). Case-insensitive regex rules use
    ``re.IGNORECASE``, which only folds single characters, so there
    ``"ß"`` does not match ``"SS"``.
    """

    pattern: str
    mode: MatchMode = MatchMode.PREFIX
    case_sensitive: bool = False
    name: str = ""
    storage_tier: Optional[StorageTier] = None
    _regex: Optional[re.Pattern] = field(default=None, init=False, repr=False, compare=False)
    _error: Optional[str] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.mode is not MatchMode.REGEX:
            return
        try:
            compiled = self.compile()
        except InvalidPattern as exc:
            object.__setattr__(self, "_error", str(exc))
        else:
            object.__setattr__(self, "_regex", compiled)

    def compile(self) -> re.Pattern:
        flags = 0 if self.case_sensitive else re.IGNORECASE
        try:
            return re.compile(self.pattern, flags)
        except re.error as exc:
            raise InvalidPattern(f"Invalid regex '{self.pattern}': {exc}") from exc

    @property
    def is_valid(self) -> bool:
        return self._error is None

    @property
    def error(self) -> Optional[str]:
        return self._error

    def accepts(self, entry: ObjectEntry) -> bool:
        """Key predicate combined with the optional storage tier filter."""

        if self.storage_tier is not None and entry.tier is not self.storage_tier:
            return False
        return matches(entry.key, self)

    def summary(self) -> str:
        pattern = self.pattern if self.case_sensitive else f"{self.pattern} (insensitive)"
        tier = f" + {self.storage_tier.value}" if self.storage_tier else ""
        label = self.name or "mask"
        return f"{label} ({self.mode.value}: {pattern}{tier})"


def matches(entry_key: str, rule: SelectionRule) -> bool:
    if rule.mode is MatchMode.REGEX:
        if rule._regex is None:
            return False
        return rule._regex.search(entry_key) is not None

    key = entry_key
    pattern = rule.pattern
    if not rule.case_sensitive:
        key = fold(key)
        pattern = fold(pattern)
    if rule.mode is MatchMode.PREFIX:
        return key.startswith(pattern)
    if rule.mode is MatchMode.SUFFIX:
        return key.endswith(pattern)
    return pattern in key


@dataclass
class SavedRule:
    """A named rule the operator kept for later, optionally with a target tier."""

    rule: SelectionRule
    target_tier: Optional[StorageTier] = None
    notes: str = ""
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def name(self) -> str:
        return self.rule.name

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.rule.name,
            "pattern": self.rule.pattern,
            "mode": self.rule.mode.value,
            "case_sensitive": self.rule.case_sensitive,
            "storage_tier": self.rule.storage_tier.value if self.rule.storage_tier else None,
            "target_tier": self.target_tier.value if self.target_tier else None,
            "notes": self.notes,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SavedRule":
        storage_tier = data.get("storage_tier")
        target_tier = data.get("target_tier")
        rule = SelectionRule(
            pattern=str(data["pattern"]),
            mode=MatchMode(data.get("mode", MatchMode.PREFIX.value)),
            case_sensitive=bool(data.get("case_sensitive", False)),
            name=str(data.get("name", "")),
            storage_tier=StorageTier(storage_tier) if storage_tier else None,
        )
        created_at = data.get("created_at")
        return cls(
            rule=rule,
            target_tier=StorageTier(target_tier) if target_tier else None,
            notes=str(data.get("notes") or ""),
            created_at=datetime.fromisoformat(created_at) if created_at else utcnow(),
            id=str(data.get("id") or uuid.uuid4()),
        )


class RuleStorage:
    """JSON-backed store for saved selection rules."""

    def __init__(self, storage_path: str | Path | None = None):
        if storage_path is None:
            storage_path = Path.home() / ".bucket_brigade_rules.json"
        self._path = Path(storage_path)

    def load(self) -> list[SavedRule]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            LOGGER.warning("Could not read saved rules from %s", self._path)
            return []

        rules: list[SavedRule] = []
        for entry in data.get("rules", []):
            try:
                rules.append(SavedRule.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                LOGGER.warning("Skipping malformed saved rule: %r", entry)
                continue
        return rules

    def save(self, rules: list[SavedRule]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"rules": [rule.to_dict() for rule in rules]}
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
