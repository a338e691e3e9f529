"""Customer display name policy.

A provider-observed name is "synthetic" when it carries no information
about the person: empty, our own placeholder, phone-shaped, a JID, or a
single character. Synthetic names never overwrite a real name; a real
name always replaces a synthetic one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

PLACEHOLDER_NAME = "Unnamed contact"
ATTENDANT_NAME = "Attendant"

_PHONE_SHAPED = re.compile(r"^[\d\s+\-().]+$")

NamePredicate = Callable[[str | None, str | None], bool]


def is_synthetic_name(name: str | None, phone: str | None = None) -> bool:
    """Default heuristic for names that must not be stored as display names."""
    if name is None:
        return True
    value = name.strip()
    if not value or value == PLACEHOLDER_NAME:
        return True
    if len(value) < 2:
        return True
    if "@" in value:
        return True
    if _PHONE_SHAPED.match(value):
        return True
    if phone and re.sub(r"\D", "", value) == phone and not re.search(r"[^\W\d_]", value):
        return True
    return False


@dataclass(frozen=True)
class NamePolicy:
    """Pluggable synthetic-name detection."""

    is_synthetic: NamePredicate = is_synthetic_name
    placeholder: str = PLACEHOLDER_NAME

    def display_name(self, observed: str | None, phone: str | None = None) -> str:
        """Name to store for a new customer."""
        if self.is_synthetic(observed, phone):
            return self.placeholder
        return observed.strip()  # type: ignore[union-attr]

    def upgrade(self, current: str | None, observed: str | None, phone: str | None = None) -> str | None:
        """New name for an existing customer, or None to keep the current one.

        Upgrades only when the current name is synthetic and the observed one
        is real, so a name once learned is never replaced by a placeholder.
        """
        if self.is_synthetic(observed, phone):
            return None
        observed = observed.strip()  # type: ignore[union-attr]
        if not self.is_synthetic(current, phone):
            return None
        if observed == current:
            return None
        return observed


DEFAULT_NAME_POLICY = NamePolicy()
