"""
pin_matcher.py  –  Decide which live window a stored pin refers to
==================================================================

Strategies, strongest first.  The first one that yields an unambiguous
answer wins; lower tiers are never consulted after that.

  1. runtime id        exact id from the last match.  Fallback-style ids
                       (positional, may swap between passes) are trusted
                       only when nothing else shares the pin's signature.
  2. window number     exactly one candidate with the stored number.
  3. signature         role | subrole | normalized title | bucketed frame.
                       Two or more equal signatures  ->  no match.
  4. title fallback    pins WITH a signature: only when exactly one
                       candidate's title matches (exact or partial).
                       Pins WITHOUT one (older records): score by
                       title exact +240 / partial +130, role +55,
                       subrole +35, geometry ≤24px +60 / ≤96px +30.
                       Ties on (score, frame distance)  ->  no match.

Matching never crosses owner_bundle_id and never returns a window that is
already claimed in the current pass.  None means "currently unmatched",
not an error.
"""

from __future__ import annotations

import hashlib
import logging
import sys
import unicodedata
from collections import Counter
from typing import Iterable, List, Optional, Set, Tuple

from pin_models import (
    MatchMethod,
    MatchResult,
    PinnedWindowReference,
    WindowFrame,
    WindowSnapshot,
)

logger = logging.getLogger(__name__)

POSITION_BUCKET = 48
SIZE_BUCKET     = 24
FALLBACK_TAG    = "-fallback-"

SCORE_EXACT_TITLE = 240
SCORE_FUZZY_TITLE = 130
SCORE_ROLE        = 55
SCORE_SUBROLE     = 35
SCORE_GEO_NEAR    = 60   # all four deltas ≤ 24px
SCORE_GEO_CLOSE   = 30   # all four deltas ≤ 96px

_LAST = sys.maxsize


# ══════════════════════════════════════════════════════════════════════════
#  Titles and signatures
# ══════════════════════════════════════════════════════════════════════════
def normalized_title(title: str) -> str:
    """Trim, fold diacritics and case-fold so 'Café ' == 'CAFE'."""
    decomposed = unicodedata.normalize("NFKD", title or "")
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return stripped.casefold().strip()


def bucketed_frame(frame: Optional[WindowFrame]) -> str:
    if frame is None:
        return "-"
    x = (frame.x // POSITION_BUCKET) * POSITION_BUCKET
    y = (frame.y // POSITION_BUCKET) * POSITION_BUCKET
    w = (frame.width // SIZE_BUCKET) * SIZE_BUCKET
    h = (frame.height // SIZE_BUCKET) * SIZE_BUCKET
    return f"{x},{y},{w},{h}"


def _build_signature(role: str, subrole: Optional[str], norm_title: str,
                     frame: Optional[WindowFrame]) -> str:
    return f"{role}|{subrole or '-'}|{norm_title}|{bucketed_frame(frame)}"


def window_signature(window: WindowSnapshot) -> str:
    return _build_signature(window.role or "", window.subrole,
                            normalized_title(window.title), window.frame)


def reference_signature(reference: PinnedWindowReference) -> Optional[str]:
    """Cached signature, or one rebuilt from cached fields for older records.

    Returns None when the record has no role to build one from.
    """
    if reference.signature:
        return reference.signature
    if reference.role is None:
        return None
    norm = reference.normalized_title
    if norm is None:
        norm = normalized_title(reference.title)
    return _build_signature(reference.role, reference.subrole, norm, reference.frame)


# ══════════════════════════════════════════════════════════════════════════
#  Runtime ids
# ══════════════════════════════════════════════════════════════════════════
def is_fallback_runtime_id(runtime_id: Optional[str]) -> bool:
    return bool(runtime_id) and FALLBACK_TAG in runtime_id


class RuntimeIdAllocator:
    """
    Hands out runtime ids for one enumeration pass.

    Windows with an OS window number get "<pid>-<number>".  Windows without
    one get "<pid>-fallback-<fingerprint>-<occurrence>", where the
    fingerprint covers normalized title + bucketed frame and the occurrence
    counts same-fingerprint windows of that process in enumeration order.
    Use a fresh allocator per pass so occurrences restart at 0.
    """

    def __init__(self) -> None:
        self._seen: Counter = Counter()

    def allocate(self, pid: int, window_number: Optional[int], title: str,
                 frame: Optional[WindowFrame]) -> str:
        if window_number is not None:
            return f"{pid}-{window_number}"
        fingerprint = fallback_fingerprint(title, frame)
        key = (pid, fingerprint)
        occurrence = self._seen[key]
        self._seen[key] += 1
        return f"{pid}{FALLBACK_TAG}{fingerprint}-{occurrence}"


def fallback_fingerprint(title: str, frame: Optional[WindowFrame]) -> str:
    raw = f"{normalized_title(title)}|{bucketed_frame(frame)}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:12]


# ══════════════════════════════════════════════════════════════════════════
#  Ordering / geometry helpers
# ══════════════════════════════════════════════════════════════════════════
def candidate_sort_key(window: WindowSnapshot) -> Tuple:
    f = window.frame
    return (
        window.os_window_number if window.os_window_number is not None else _LAST,
        f.x if f else _LAST,
        f.y if f else _LAST,
        f.width if f else _LAST,
        f.height if f else _LAST,
        normalized_title(window.title),
        window.runtime_id,
    )


def _deltas(a: WindowFrame, b: WindowFrame) -> Tuple[int, int, int, int]:
    return (abs(a.x - b.x), abs(a.y - b.y),
            abs(a.width - b.width), abs(a.height - b.height))


def frame_similarity_score(reference: WindowFrame, candidate: WindowFrame) -> int:
    d = _deltas(reference, candidate)
    if all(v <= 24 for v in d):
        return SCORE_GEO_NEAR
    if all(v <= 96 for v in d):
        return SCORE_GEO_CLOSE
    return 0


def frame_distance(reference: Optional[WindowFrame],
                   candidate: Optional[WindowFrame]) -> int:
    if reference is None or candidate is None:
        return _LAST
    return sum(_deltas(reference, candidate))


# ══════════════════════════════════════════════════════════════════════════
#  Matching
# ══════════════════════════════════════════════════════════════════════════
def find_best_match(
    reference: PinnedWindowReference,
    windows: Iterable[WindowSnapshot],
    claimed_ids: Optional[Set[str]] = None,
) -> Optional[MatchResult]:
    claimed = claimed_ids or set()
    candidates = sorted(
        (w for w in windows
         if w.owner_bundle_id == reference.owner_bundle_id
         and w.runtime_id not in claimed),
        key=candidate_sort_key,
    )
    if not candidates:
        return None

    ref_sig = reference_signature(reference)
    sig_matches = ([c for c in candidates if window_signature(c) == ref_sig]
                   if ref_sig is not None else [])

    # ── 1. runtime id ─────────────────────────────────────────────────────
    runtime_id = reference.last_known_runtime_id
    if runtime_id:
        hit = next((c for c in candidates if c.runtime_id == runtime_id), None)
        if hit is not None:
            if not is_fallback_runtime_id(runtime_id):
                return MatchResult(hit, MatchMethod.RUNTIME_ID)
            if ref_sig is not None:
                trusted = len(sig_matches) <= 1
            else:
                trusted = len(candidates) == 1
            if trusted:
                return MatchResult(hit, MatchMethod.RUNTIME_ID)
            logger.debug("pin %s: fallback runtime id %s not trusted, "
                         "%d windows share its signature",
                         reference.id, runtime_id, len(sig_matches))

    # ── 2. window number ──────────────────────────────────────────────────
    if reference.os_window_number is not None:
        numbered = [c for c in candidates
                    if c.os_window_number == reference.os_window_number]
        if len(numbered) == 1:
            return MatchResult(numbered[0], MatchMethod.WINDOW_NUMBER)

    # ── 3. signature ──────────────────────────────────────────────────────
    if len(sig_matches) == 1:
        return MatchResult(sig_matches[0], MatchMethod.SIGNATURE)
    if len(sig_matches) > 1:
        logger.debug("pin %s: %d windows share signature %r, refusing to guess",
                     reference.id, len(sig_matches), ref_sig)
        return None

    # ── 4. scored fallback ────────────────────────────────────────────────
    if ref_sig is not None:
        # A pin with a signature only falls back to titles when a single
        # window is left that could plausibly be it.
        viable = [c for c in candidates if score_candidate(reference, c)[1] is not None]
        if len(viable) != 1:
            logger.debug("pin %s: %d title candidates after signature miss, no match",
                         reference.id, len(viable))
            return None
        return MatchResult(viable[0], score_candidate(reference, viable[0])[1])
    return _best_scored(reference, candidates)


def _title_score(ref_norm: str, cand_norm: str) -> Tuple[int, Optional[MatchMethod]]:
    if cand_norm == ref_norm:
        return SCORE_EXACT_TITLE, MatchMethod.EXACT_TITLE
    if ref_norm and cand_norm and (ref_norm in cand_norm or cand_norm in ref_norm):
        return SCORE_FUZZY_TITLE, MatchMethod.FUZZY_TITLE
    return 0, None


def score_candidate(reference: PinnedWindowReference,
                    candidate: WindowSnapshot) -> Tuple[int, Optional[MatchMethod]]:
    """Score one candidate; (0, None) when its title is not even a partial match."""
    ref_norm = reference.normalized_title
    if ref_norm is None:
        ref_norm = normalized_title(reference.title)
    score, method = _title_score(ref_norm, normalized_title(candidate.title))
    if method is None:
        return 0, None
    if reference.role is not None and reference.role == candidate.role:
        score += SCORE_ROLE
    if reference.subrole is not None and reference.subrole == candidate.subrole:
        score += SCORE_SUBROLE
    if reference.frame is not None and candidate.frame is not None:
        score += frame_similarity_score(reference.frame, candidate.frame)
    return score, method


def _best_scored(reference: PinnedWindowReference,
                 ordered: List[WindowSnapshot]) -> Optional[MatchResult]:
    best: Optional[MatchResult] = None
    best_key: Optional[Tuple[int, int]] = None
    tied = False

    for cand in ordered:
        score, method = score_candidate(reference, cand)
        if method is None:
            continue
        # Higher score first, then smaller exact-frame distance.
        key = (-score, frame_distance(reference.frame, cand.frame))
        if best_key is None or key < best_key:
            best, best_key, tied = MatchResult(cand, method), key, False
        elif key == best_key:
            tied = True

    if tied:
        logger.debug("pin %s: scored fallback tie at score=%d, no match",
                     reference.id, -best_key[0])
        return None
    return best
