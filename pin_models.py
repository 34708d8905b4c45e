"""
pin_models.py  –  Value types shared by the matcher, the store and the CLI
==========================================================================

WindowSnapshot is re-captured on every enumeration pass and never mutated.
PinnedWindowReference is the persisted record; only PinStore writes to its
cached fields, and only after a successful match.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


UNTITLED_WINDOW = "Untitled Window"
UNKNOWN_APP     = "Unknown App"


@dataclass(frozen=True)
class WindowFrame:
    x: int
    y: int
    width: int
    height: int

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, d: Optional[Dict]) -> Optional["WindowFrame"]:
        if not isinstance(d, dict):
            return None
        try:
            return cls(int(d["x"]), int(d["y"]), int(d["width"]), int(d["height"]))
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True)
class WindowSnapshot:
    runtime_id: str
    owner_bundle_id: str
    owner_app_name: str
    title: str
    pid: int = 0
    os_window_number: Optional[int] = None
    role: Optional[str] = None
    subrole: Optional[str] = None
    frame: Optional[WindowFrame] = None
    is_minimized: bool = False

    @property
    def menu_title(self) -> str:
        title = self.title.strip() or UNTITLED_WINDOW
        return f"{title} - {self.owner_app_name}"


@dataclass
class PinnedWindowReference:
    id: str
    owner_bundle_id: str
    owner_app_name: str
    title: str
    os_window_number: Optional[int] = None
    last_known_runtime_id: Optional[str] = None
    role: Optional[str] = None
    subrole: Optional[str] = None
    frame: Optional[WindowFrame] = None
    normalized_title: Optional[str] = None
    signature: Optional[str] = None
    custom_name: Optional[str] = None
    created_at: str = ""

    def to_dict(self) -> Dict:
        return {
            "id":                    self.id,
            "owner_bundle_id":       self.owner_bundle_id,
            "owner_app_name":        self.owner_app_name,
            "title":                 self.title,
            "os_window_number":      self.os_window_number,
            "last_known_runtime_id": self.last_known_runtime_id,
            "role":                  self.role,
            "subrole":               self.subrole,
            "frame":                 self.frame.to_dict() if self.frame else None,
            "normalized_title":      self.normalized_title,
            "signature":             self.signature,
            "custom_name":           self.custom_name,
            "created_at":            self.created_at,
        }

    @classmethod
    def from_dict(cls, d: Dict) -> "PinnedWindowReference":
        """Build a reference from a persisted record.

        Raises ValueError when the record lacks an id or bundle id; every
        other field is optional so older, partial records still load.
        """
        if not isinstance(d, dict):
            raise ValueError("pin record must be an object")
        pin_id = str(d.get("id") or "").strip()
        bundle = str(d.get("owner_bundle_id") or "").strip()
        if not pin_id or not bundle:
            raise ValueError("pin record needs 'id' and 'owner_bundle_id'")

        number = d.get("os_window_number")
        try:
            number = int(number) if number is not None else None
        except (TypeError, ValueError):
            number = None

        def _opt(key: str) -> Optional[str]:
            v = d.get(key)
            return str(v) if v is not None else None

        return cls(
            id=pin_id,
            owner_bundle_id=bundle,
            owner_app_name=str(d.get("owner_app_name") or ""),
            title=str(d.get("title") or ""),
            os_window_number=number,
            last_known_runtime_id=_opt("last_known_runtime_id"),
            role=_opt("role"),
            subrole=_opt("subrole"),
            frame=WindowFrame.from_dict(d.get("frame")),
            normalized_title=_opt("normalized_title"),
            signature=_opt("signature"),
            custom_name=_opt("custom_name"),
            created_at=str(d.get("created_at") or ""),
        )


class MatchMethod(Enum):
    """Confidence tier a match was made on, strongest first."""
    RUNTIME_ID    = "runtime_id"
    WINDOW_NUMBER = "window_number"
    SIGNATURE     = "signature"
    EXACT_TITLE   = "exact_title"
    FUZZY_TITLE   = "fuzzy_title"


@dataclass(frozen=True)
class MatchResult:
    window: WindowSnapshot
    method: MatchMethod


@dataclass
class PinnedItem:
    """A reference joined with the live window it resolved to, if any."""
    id: str
    reference: PinnedWindowReference
    window: Optional[WindowSnapshot] = None
    method: Optional[MatchMethod] = None

    @property
    def is_missing(self) -> bool:
        return self.window is None

    @property
    def display_title(self) -> str:
        source = self.window.title if self.window else self.reference.title
        return source.strip() or "Untitled"

    @property
    def display_app_name(self) -> str:
        return self.window.owner_app_name if self.window else self.reference.owner_app_name

    @property
    def tab_label(self) -> str:
        custom = (self.reference.custom_name or "").strip()
        if custom:
            return custom
        return f"{self.display_app_name} · {self.display_title}"


@dataclass
class PinDiagnostics:
    total_pins: int = 0
    matched_pins: int = 0
    missing_pins: int = 0
    last_reconcile_at: Optional[str] = None
    last_reconcile_duration_ms: Optional[float] = None
    match_counts_by_method: Dict[MatchMethod, int] = field(default_factory=dict)

    def summary_lines(self) -> List[str]:
        lines = [
            f"pins={self.total_pins}  matched={self.matched_pins}  "
            f"missing={self.missing_pins}"
        ]
        for method in MatchMethod:
            n = self.match_counts_by_method.get(method, 0)
            if n:
                lines.append(f"  {method.value:<14} {n}")
        if self.last_reconcile_duration_ms is not None:
            lines.append(f"  reconciled at {self.last_reconcile_at} "
                         f"in {self.last_reconcile_duration_ms:.2f} ms")
        return lines
