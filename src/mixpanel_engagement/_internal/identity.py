"""Identity normalization for creator ids and portfolio tickers.

Mixpanel occasionally reports the same creator under more than one raw id.
The alias table that collapses them is curated out-of-band and handed to
IdentityNormalizer at construction, so every reshape pass aggregates on the
canonical id.
"""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

from mixpanel_engagement.exceptions import ConfigError

DEFAULT_CREATOR_ALIASES: Mapping[str, str] = MappingProxyType(
    {"118": "211855351476994048"}
)
"""Known duplicate creator ids mapped to their canonical id (@dubAdvisors)."""

TICKER_SIGIL = "$"


class IdentityNormalizer:
    """Resolve duplicate raw ids to one canonical id.

    Example:
        ```python
        normalizer = IdentityNormalizer({"118": "211855351476994048"})
        normalizer.normalize("118")  # "211855351476994048"
        normalizer.normalize("42")  # "42"
        ```
    """

    def __init__(self, aliases: Mapping[str, str] | None = None) -> None:
        """Initialize the normalizer.

        Args:
            aliases: Duplicate id -> canonical id. Defaults to
                DEFAULT_CREATOR_ALIASES.

        Raises:
            ConfigError: If a canonical id is itself an alias key.
        """
        table = dict(DEFAULT_CREATOR_ALIASES if aliases is None else aliases)
        chained = sorted(c for c in set(table.values()) if c in table)
        if chained:
            raise ConfigError(
                "Alias table contains chains: canonical ids must not be aliases",
                details={"chained_ids": chained},
            )
        self._aliases = MappingProxyType(table)

    @property
    def aliases(self) -> Mapping[str, str]:
        """Read-only view of the alias table."""
        return self._aliases

    def normalize(self, raw_id: str) -> str:
        """Return the canonical id for raw_id, or raw_id unchanged."""
        return self._aliases.get(raw_id, raw_id)

    def is_alias(self, raw_id: str) -> bool:
        """Whether raw_id is a known duplicate."""
        return raw_id in self._aliases

    def __repr__(self) -> str:
        return f"IdentityNormalizer(aliases={dict(self._aliases)!r})"


def normalize_ticker(raw: str) -> str:
    """Ensure a ticker carries a leading `$` sigil.

    Args:
        raw: Ticker as reported by Mixpanel (``DOGE`` or ``$DOGE``).

    Returns:
        Sigil-prefixed ticker with surrounding whitespace removed.
    """
    ticker = raw.strip()
    if ticker.startswith(TICKER_SIGIL):
        return ticker
    return f"{TICKER_SIGIL}{ticker}"
