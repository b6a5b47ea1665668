"""Remote database built from the registry document."""

import logging
from collections.abc import Callable, Iterator
from difflib import SequenceMatcher
from typing import Any

from .api import RegistryClient
from .errors import ParseError
from .manifest import ModManifest, parse_registry_entry

logger = logging.getLogger(__name__)

# Minimum similarity for a mod to show up in search results
SEARCH_THRESHOLD = 0.45
# Floor applied when the query appears verbatim inside a field
SUBSTRING_SCORE = 0.75


def parse_registry(document: Any) -> dict[str, ModManifest]:
    """
    Parse a registry document into a mapping of identity -> manifest.

    The document shape is validated strictly; individual invalid entries are
    skipped with a warning so one bad entry cannot hide the whole registry.
    """
    if not isinstance(document, dict):
        raise ParseError("Registry document must be a JSON object")
    raw_mods = document.get("mods")
    if not isinstance(raw_mods, list):
        raise ParseError("Registry document is missing the 'mods' list")

    mods: dict[str, ModManifest] = {}
    for i, raw in enumerate(raw_mods):
        try:
            manifest = parse_registry_entry(raw)
        except ParseError as e:
            logger.warning("Skipping registry entry %d: %s", i, e)
            continue
        if manifest.identity in mods:
            logger.warning("Duplicate registry entry for %s, keeping the first", manifest.identity)
            continue
        mods[manifest.identity] = manifest
    return mods


def _similarity(query: str, text: str) -> float:
    text = text.lower()
    if not text:
        return 0.0
    score = SequenceMatcher(None, query, text).ratio()
    if query in text:
        score = max(score, SUBSTRING_SCORE)
    return score


class RemoteDatabase:
    """Mods available from the registry, replaced wholesale on refresh."""

    def __init__(
        self,
        client: RegistryClient | None = None,
        on_change: Callable[[], None] | None = None,
    ):
        self.client = client
        self.on_change = on_change
        self.etag = ""
        self.version = ""
        self._mods: dict[str, ModManifest] = {}

    def refresh(self) -> bool:
        """
        Fetch the registry and swap in the new snapshot.

        Returns False when the registry reported no changes. On network or
        parse failure the previous snapshot stays in place and the error
        propagates.
        """
        if self.client is None:
            raise ParseError("Remote database has no registry client")

        response = self.client.fetch_registry(self.etag)
        if response.not_modified:
            logger.info("Registry not modified since last fetch")
            return False

        mods = parse_registry(response.document)
        self.load(mods, etag=response.etag, version=str(response.document.get("version", "")))
        logger.info("Loaded %d mods from registry", len(mods))
        return True

    def load(self, mods: dict[str, ModManifest], etag: str = "", version: str = "") -> None:
        """Replace the snapshot with an already parsed mapping."""
        self._mods = dict(mods)
        self.etag = etag
        self.version = version
        if self.on_change is not None:
            self.on_change()

    def get(self, identity: str) -> ModManifest | None:
        return self._mods.get(identity)

    def all(self) -> list[ModManifest]:
        return list(self._mods.values())

    def snapshot(self) -> dict[str, ModManifest]:
        """The current mapping; callers must treat it as read-only."""
        return self._mods

    def __contains__(self, identity: str) -> bool:
        return identity in self._mods

    def __len__(self) -> int:
        return len(self._mods)

    def search(self, query: str) -> Iterator[ModManifest]:
        """
        Yield mods ranked by fuzzy similarity of name/author to the query.

        Recomputed on every call. Ties are broken by exact prefix match, then
        by identity. An empty query yields everything by download count.
        """
        mods = list(self._mods.values())
        query = query.strip().lower()

        if not query:
            yield from sorted(mods, key=lambda m: (-m.download_count, m.identity))
            return

        scored = []
        for mod in mods:
            score = max(_similarity(query, mod.name), _similarity(query, mod.author))
            if score < SEARCH_THRESHOLD:
                continue
            prefix = mod.name.lower().startswith(query) or mod.author.lower().startswith(query)
            scored.append((-score, not prefix, mod.identity, mod))

        scored.sort(key=lambda item: item[:3])
        for *_, mod in scored:
            yield mod
