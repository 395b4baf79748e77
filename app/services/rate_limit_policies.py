"""Endpoint categories and their window policies.

The table is built once at import and never mutated. Lookups never fail:
anything unrecognised resolves to the default policy.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping

MINUTE_MS = 60 * 1000


class EndpointCategory(str, Enum):
    AUTH = "auth"
    PITCH_WRITE = "pitch-write"
    ANALYTICS_READ = "analytics-read"
    UPLOAD = "upload"
    DEFAULT = "default"


@dataclass(frozen=True)
class EndpointPolicy:
    """Window size and admission limit for one endpoint category."""

    category: str
    window_ms: int
    max_requests: int


DEFAULT_POLICIES: Mapping[str, EndpointPolicy] = MappingProxyType(
    {
        EndpointCategory.AUTH.value: EndpointPolicy(EndpointCategory.AUTH.value, 15 * MINUTE_MS, 5),
        EndpointCategory.PITCH_WRITE.value: EndpointPolicy(
            EndpointCategory.PITCH_WRITE.value, MINUTE_MS, 10
        ),
        EndpointCategory.ANALYTICS_READ.value: EndpointPolicy(
            EndpointCategory.ANALYTICS_READ.value, MINUTE_MS, 30
        ),
        EndpointCategory.UPLOAD.value: EndpointPolicy(EndpointCategory.UPLOAD.value, MINUTE_MS, 5),
        EndpointCategory.DEFAULT.value: EndpointPolicy(EndpointCategory.DEFAULT.value, MINUTE_MS, 100),
    }
)

# Route-prefixed names used by the web app's API routes
CATEGORY_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "api/auth": EndpointCategory.AUTH.value,
        "api/pitch": EndpointCategory.PITCH_WRITE.value,
        "api/analytics": EndpointCategory.ANALYTICS_READ.value,
        "api/upload": EndpointCategory.UPLOAD.value,
    }
)


class PolicyTable:
    """Read-only category -> policy lookup with a guaranteed fallback."""

    def __init__(
        self,
        policies: Mapping[str, EndpointPolicy] = DEFAULT_POLICIES,
        aliases: Mapping[str, str] = CATEGORY_ALIASES,
    ) -> None:
        if EndpointCategory.DEFAULT.value not in policies:
            raise ValueError("policy table requires a 'default' entry")
        for policy in policies.values():
            if policy.window_ms < 1 or policy.max_requests < 1:
                raise ValueError(f"invalid policy for '{policy.category}'")
        self._policies = MappingProxyType(dict(policies))
        self._aliases = MappingProxyType(dict(aliases))

    @property
    def default(self) -> EndpointPolicy:
        return self._policies[EndpointCategory.DEFAULT.value]

    def categories(self) -> list[str]:
        return list(self._policies)

    def resolve(self, category: str | EndpointCategory | None) -> EndpointPolicy:
        """Return the policy for category, or the default one."""
        if category is None:
            return self.default
        name = category.value if isinstance(category, EndpointCategory) else str(category)
        name = name.strip().lower()
        name = self._aliases.get(name, name)
        return self._policies.get(name, self.default)


default_policy_table = PolicyTable()


def resolve_policy(category: str | EndpointCategory | None) -> EndpointPolicy:
    return default_policy_table.resolve(category)
