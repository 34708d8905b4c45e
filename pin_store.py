"""
pin_store.py  –  Own the pin list and keep it reconciled with live windows
==========================================================================

PinStore is single-threaded and does no locking; callers serialize calls
(one UI thread, or the CLI's own process).  Every mutating operation
persists the list and then re-runs reconcile() against the most recently
seen window list, so the published items never go stale.

Persistence is injected (JsonPinStorage, or None for in-memory use).
Load problems mean "no pins"; save problems are logged and retried on the
next reconcile or mutation, never raised.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections import Counter
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from pin_matcher import find_best_match, normalized_title, window_signature
from pin_models import (
    UNKNOWN_APP,
    UNTITLED_WINDOW,
    PinDiagnostics,
    PinnedItem,
    PinnedWindowReference,
    WindowSnapshot,
)

logger = logging.getLogger(__name__)

SCHEMA                   = "window-pins"
DEFAULT_MAX_VISIBLE_PINS = 10


def _now() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S")

def _uuid() -> str:
    return str(uuid.uuid4())

def canonical_title(window: WindowSnapshot) -> str:
    return window.title.strip() or UNTITLED_WINDOW

def canonical_app_name(window: WindowSnapshot) -> str:
    return (window.owner_app_name.strip()
            or window.owner_bundle_id.strip()
            or UNKNOWN_APP)


# ══════════════════════════════════════════════════════════════════════════
#  Persistence
# ══════════════════════════════════════════════════════════════════════════
class JsonPinStorage:
    """Reads and writes the ordered pin list as a single JSON document."""

    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> List[PinnedWindowReference]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning("Could not read pins from %s: %s", self.path, exc)
            return []

        if isinstance(data, dict):
            if str(data.get("schema") or "").strip() != SCHEMA:
                logger.warning("Ignoring %s: unrecognised schema %r",
                               self.path, data.get("schema"))
                return []
            records = data.get("pins")
        else:
            records = data
        if not isinstance(records, list):
            return []

        refs: List[PinnedWindowReference] = []
        seen = set()
        for rec in records:
            try:
                ref = PinnedWindowReference.from_dict(rec)
            except ValueError as exc:
                logger.warning("Skipping malformed pin record: %s", exc)
                continue
            if ref.id in seen:
                continue
            seen.add(ref.id)
            refs.append(ref)
        return refs

    def save(self, references: Iterable[PinnedWindowReference]) -> None:
        data = {
            "schema":   SCHEMA,
            "saved_at": _now(),
            "pins":     [r.to_dict() for r in references],
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp, self.path)


# ══════════════════════════════════════════════════════════════════════════
#  Store
# ══════════════════════════════════════════════════════════════════════════
class PinStore:
    def __init__(self, storage: Optional[JsonPinStorage] = None,
                 max_visible_pins: int = DEFAULT_MAX_VISIBLE_PINS) -> None:
        self._storage = storage
        self._references: List[PinnedWindowReference] = storage.load() if storage else []
        self._last_seen: List[WindowSnapshot] = []
        self._items: List[PinnedItem] = []
        self._diagnostics = PinDiagnostics(total_pins=len(self._references),
                                           missing_pins=len(self._references))
        self._save_pending = False
        self.max_visible_pins = max(0, int(max_visible_pins))

    # ── read side ─────────────────────────────────────────────────────────
    @property
    def references(self) -> List[PinnedWindowReference]:
        return [replace(r) for r in self._references]

    @property
    def items(self) -> List[PinnedItem]:
        return list(self._items)

    @property
    def diagnostics(self) -> PinDiagnostics:
        return self._diagnostics

    @property
    def last_seen_windows(self) -> List[WindowSnapshot]:
        return list(self._last_seen)

    @property
    def visible_items(self) -> List[PinnedItem]:
        return self._items[:self.max_visible_pins]

    @property
    def overflow_items(self) -> List[PinnedItem]:
        return self._items[self.max_visible_pins:]

    def item(self, pin_id: str) -> Optional[PinnedItem]:
        return next((i for i in self._items if i.id == pin_id), None)

    # ── reconcile ─────────────────────────────────────────────────────────
    def reconcile(self, windows: Iterable[WindowSnapshot]) -> List[PinnedItem]:
        """Match every pin, in stored order, against a full window list."""
        started = time.perf_counter()
        self._last_seen = list(windows)
        claimed = set()
        items: List[PinnedItem] = []
        counts: Counter = Counter()
        dirty = False

        for ref in self._references:
            match = find_best_match(ref, self._last_seen, claimed)
            if match is None:
                items.append(PinnedItem(ref.id, replace(ref)))
                continue
            claimed.add(match.window.runtime_id)
            counts[match.method] += 1
            if self._refresh_identity(ref, match.window):
                dirty = True
            items.append(PinnedItem(ref.id, replace(ref), match.window, match.method))

        if dirty or self._save_pending:
            self._persist()

        self._items = items
        matched = sum(counts.values())
        self._diagnostics = PinDiagnostics(
            total_pins=len(self._references),
            matched_pins=matched,
            missing_pins=max(0, len(self._references) - matched),
            last_reconcile_at=_now(),
            last_reconcile_duration_ms=(time.perf_counter() - started) * 1000,
            match_counts_by_method=dict(counts),
        )
        logger.debug("reconciled %d pins against %d windows: %d matched",
                     len(self._references), len(self._last_seen), matched)
        return self.items

    @staticmethod
    def _identity_fields(window: WindowSnapshot) -> Dict:
        return {
            "owner_app_name":        canonical_app_name(window),
            "title":                 canonical_title(window),
            "os_window_number":      window.os_window_number,
            "last_known_runtime_id": window.runtime_id,
            "role":                  window.role,
            "subrole":               window.subrole,
            "normalized_title":      normalized_title(window.title),
            "frame":                 window.frame,
            "signature":             window_signature(window),
        }

    def _refresh_identity(self, ref: PinnedWindowReference,
                          window: WindowSnapshot) -> bool:
        fields = self._identity_fields(window)
        changed = False
        for name, value in fields.items():
            if getattr(ref, name) != value:
                setattr(ref, name, value)
                changed = True
        return changed

    def _persist(self) -> None:
        if self._storage is None:
            return
        try:
            self._storage.save(self._references)
            self._save_pending = False
        except (OSError, TypeError, ValueError) as exc:
            self._save_pending = True
            logger.warning("Saving pins failed, will retry: %s", exc)

    def _commit(self) -> None:
        self._persist()
        self.reconcile(self._last_seen)

    def _index(self, pin_id: str) -> Optional[int]:
        return next((i for i, r in enumerate(self._references) if r.id == pin_id), None)

    # ── mutations ─────────────────────────────────────────────────────────
    def toggle_pin(self, window: WindowSnapshot) -> Optional[str]:
        """Pin a live window, or unpin it if it is already pinned.

        Returns the new pin id, or None when the call unpinned.
        """
        existing = self.existing_pin_id(window)
        if existing is not None:
            self.unpin(existing)
            return None

        ref = PinnedWindowReference(
            id=_uuid(),
            owner_bundle_id=window.owner_bundle_id,
            owner_app_name=canonical_app_name(window),
            title=canonical_title(window),
            created_at=_now(),
        )
        self._refresh_identity(ref, window)
        self._references.append(ref)
        logger.info("Pinned %r as %s", window.menu_title, ref.id)
        self._commit()
        return ref.id

    def unpin(self, pin_id: str) -> bool:
        before = len(self._references)
        self._references = [r for r in self._references if r.id != pin_id]
        if len(self._references) == before:
            return False
        self._commit()
        return True

    def remove_missing_pins(self) -> int:
        missing = {i.id for i in self._items if i.is_missing}
        if not missing:
            return 0
        self._references = [r for r in self._references if r.id not in missing]
        self._commit()
        return len(missing)

    def rename_pin(self, pin_id: str, custom_name: Optional[str]) -> bool:
        idx = self._index(pin_id)
        if idx is None:
            return False
        cleaned = (custom_name or "").strip()
        self._references[idx].custom_name = cleaned or None
        self._commit()
        return True

    def reassign_pin(self, pin_id: str, window: WindowSnapshot) -> bool:
        """Rebind a pin to a user-chosen window, keeping its id and custom name."""
        idx = self._index(pin_id)
        if idx is None:
            return False
        ref = self._references[idx]
        ref.owner_bundle_id = window.owner_bundle_id
        self._refresh_identity(ref, window)
        self._commit()
        return True

    def move_pin(self, pin_id: str, before_index: Optional[int]) -> bool:
        """Move a pin so it lands before before_index (append when out of range)."""
        idx = self._index(pin_id)
        if idx is None:
            return False
        refs = list(self._references)
        ref = refs.pop(idx)
        if before_index is None or not 0 <= before_index <= len(refs):
            before_index = len(refs)
        refs.insert(before_index, ref)
        self._references = refs
        self._commit()
        return True

    def move_pins(self, source_indices: Iterable[int], destination: int) -> None:
        """Move several pins to the offset `destination` of the original list."""
        count = len(self._references)
        sources = sorted({i for i in source_indices if 0 <= i < count})
        if not sources:
            return
        destination = max(0, min(destination, count))
        moving = [self._references[i] for i in sources]
        rest = [r for i, r in enumerate(self._references) if i not in sources]
        insert_at = destination - sum(1 for i in sources if i < destination)
        self._references = rest[:insert_at] + moving + rest[insert_at:]
        self._commit()

    # ── lookups ───────────────────────────────────────────────────────────
    def existing_pin_id(self, window: WindowSnapshot) -> Optional[str]:
        """Strict identity lookup; never consults the matcher."""
        for item in self._items:
            if item.window is not None and item.window.runtime_id == window.runtime_id:
                return item.id
        for ref in self._references:
            if ref.owner_bundle_id != window.owner_bundle_id:
                continue
            if ref.os_window_number is not None and ref.os_window_number == window.os_window_number:
                return ref.id
            if ref.last_known_runtime_id is not None and ref.last_known_runtime_id == window.runtime_id:
                return ref.id
        return None

    def is_pinned(self, window: WindowSnapshot) -> bool:
        return self.existing_pin_id(window) is not None

    def pinned_item_for(self, window: WindowSnapshot) -> Optional[PinnedItem]:
        pin_id = self.existing_pin_id(window)
        return self.item(pin_id) if pin_id is not None else None

    def reassignment_candidates(self, item: PinnedItem) -> List[WindowSnapshot]:
        same_app = [w for w in self._last_seen
                    if w.owner_bundle_id == item.reference.owner_bundle_id]
        return sorted(same_app, key=lambda w: (w.menu_title, w.runtime_id))

    @staticmethod
    def mapping_description(item: PinnedItem) -> str:
        if item.window is not None:
            return item.window.menu_title
        return f"Missing: {item.reference.title} - {item.reference.owner_app_name}"
