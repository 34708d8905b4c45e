"""
window_pins.py  –  Pin specific Windows desktop windows and jump back to them
=============================================================================

Schema: "window-pins"  (see pin_store.JsonPinStorage)

Key behaviours
  · A pin tracks one window, not an app.  Pins survive the window being
    closed and reopened, renamed, moved or resized; pin_matcher decides
    which live window a pin now refers to and reports "missing" rather
    than guessing between look-alike windows.
  · Live windows are enumerated fresh on every command via EnumWindows;
    owner identity is the exe path (psutil), the HWND is the per-session
    window number, the window class stands in for the subrole.
  · Minimised windows ARE listed; their frame comes from the restored
    placement rect so their signature does not change while iconic.
  · Pins are listed in stored order; that order is also the priority when
    two pins could claim the same window.
  · Hotkeys from config.json jump to a pin, e.g. ctrl+alt+1 -> pin 1.
    The listener keeps one store open and re-reconciles on every press.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
import time
from typing import Dict, List, Optional, Tuple

import psutil
import win32api
import win32con
import win32gui
import win32process

from pin_matcher import RuntimeIdAllocator, reference_signature
from pin_models import PinnedItem, WindowFrame, WindowSnapshot
from pin_store import DEFAULT_MAX_VISIBLE_PINS, JsonPinStorage, PinStore

logger = logging.getLogger(__name__)

# ══════════════════════════════════════════════════════════════════════════
#  Constants
# ══════════════════════════════════════════════════════════════════════════
CONFIG_PATH           = "config.json"
DEFAULT_PINS_PATH     = "pins.json"
DEFAULT_POLL_INTERVAL = 2.0
WINDOW_ROLE           = "window"
UNKNOWN_BUNDLE        = "unknown"

# Processes that own visible top-level windows but are shell furniture.
_BLOCKED_PROC = {
    "textinputhost.exe",
    "applicationframehost.exe",
    "shellhost.exe",
    "startmenuexperiencehost.exe",
    "searchhost.exe",
    "searchapp.exe",
    "lockapp.exe",
    "dwm.exe",
    "fontdrvhost.exe",
}

_BLOCKED_CLASS = {
    "windows.ui.core.corewindow",
    "progman",
    "workerw",
    "shell_traywnd",
}


# ══════════════════════════════════════════════════════════════════════════
#  Tiny helpers
# ══════════════════════════════════════════════════════════════════════════
def _safe_text(hwnd: int) -> str:
    try:
        return win32gui.GetWindowText(hwnd) or ""
    except Exception:
        return ""

def _safe_class(hwnd: int) -> str:
    try:
        return win32gui.GetClassName(hwnd) or ""
    except Exception:
        return ""

def _get_pid(hwnd: int) -> int:
    try:
        _, pid = win32process.GetWindowThreadProcessId(hwnd)
        return int(pid or 0)
    except Exception:
        return 0

def _proc_info(pid: int) -> Tuple[str, str]:
    """Returns (process_name, exe_path)."""
    if not pid:
        return "", ""
    try:
        p = psutil.Process(pid)
        return (p.name() or ""), (p.exe() or "")
    except (psutil.Error, OSError):
        return "", ""

def _is_iconic(hwnd: int) -> bool:
    try:
        return bool(win32gui.IsIconic(hwnd))
    except Exception:
        return False

def _window_frame(hwnd: int, minimized: bool) -> Optional[WindowFrame]:
    """Live rect for normal windows, restored placement rect for iconic ones."""
    try:
        if minimized:
            rect = tuple(win32gui.GetWindowPlacement(hwnd)[4])
        else:
            rect = tuple(win32gui.GetWindowRect(hwnd))
    except Exception:
        return None
    if len(rect) != 4:
        return None
    left, top, right, bottom = (int(v) for v in rect)
    return WindowFrame(left, top, right - left, bottom - top)

def _app_name(proc: str) -> str:
    return proc[:-4] if proc.lower().endswith(".exe") else proc


# ══════════════════════════════════════════════════════════════════════════
#  Window filter
# ══════════════════════════════════════════════════════════════════════════
def _is_interesting(hwnd: int) -> bool:
    """True for top-level user-facing windows worth offering as pins."""
    try:
        if not win32gui.IsWindow(hwnd):        return False
        if win32gui.GetParent(hwnd):           return False
        if not win32gui.IsWindowVisible(hwnd): return False
    except Exception:
        return False

    if not _safe_text(hwnd).strip():
        return False
    if _safe_class(hwnd).strip().lower() in _BLOCKED_CLASS:
        return False

    try:
        ex_style = win32gui.GetWindowLong(hwnd, win32con.GWL_EXSTYLE)
        owner    = win32gui.GetWindow(hwnd, win32con.GW_OWNER)
    except Exception:
        ex_style, owner = 0, 0
    if (ex_style & win32con.WS_EX_TOOLWINDOW) and not (ex_style & win32con.WS_EX_APPWINDOW):
        return False
    if owner and not (ex_style & win32con.WS_EX_APPWINDOW):
        return False

    if not _is_iconic(hwnd):
        f = _window_frame(hwnd, minimized=False)
        if f is None or f.width < 120 or f.height < 80:
            return False
    return True


# ══════════════════════════════════════════════════════════════════════════
#  Enumeration / activation collaborators
# ══════════════════════════════════════════════════════════════════════════
def _snapshot(hwnd: int, ids: RuntimeIdAllocator) -> Optional[WindowSnapshot]:
    pid = _get_pid(hwnd)
    proc, exe = _proc_info(pid)
    if proc.lower() in _BLOCKED_PROC:
        return None
    title     = _safe_text(hwnd).strip()
    minimized = _is_iconic(hwnd)
    frame     = _window_frame(hwnd, minimized)
    bundle    = (exe or proc).lower() or UNKNOWN_BUNDLE
    return WindowSnapshot(
        runtime_id=ids.allocate(pid, hwnd, title, frame),
        owner_bundle_id=bundle,
        owner_app_name=_app_name(proc),
        title=title,
        pid=pid,
        os_window_number=hwnd,
        role=WINDOW_ROLE,
        subrole=_safe_class(hwnd).strip() or None,
        frame=frame,
        is_minimized=minimized,
    )


def live_windows() -> List[WindowSnapshot]:
    """Full snapshot of eligible top-level windows, front to back."""
    ids = RuntimeIdAllocator()
    results: List[WindowSnapshot] = []

    def _cb(hwnd, _):
        if not _is_interesting(hwnd):
            return True
        snap = _snapshot(hwnd, ids)
        if snap is not None:
            results.append(snap)
        return True

    win32gui.EnumWindows(_cb, None)
    logger.debug("enumerated %d windows", len(results))
    return results


def activate_window(window: WindowSnapshot) -> bool:
    """Bring a live window to the foreground, restoring it first if iconic."""
    hwnd = window.os_window_number
    if not hwnd:
        return False
    try:
        if win32gui.IsIconic(hwnd):
            win32gui.ShowWindow(hwnd, win32con.SW_RESTORE)
        win32gui.SetForegroundWindow(hwnd)
        return True
    except Exception as exc:
        print(f"  [warn] SetForegroundWindow hwnd={hex(hwnd)} failed: {exc}")
        return False


# ══════════════════════════════════════════════════════════════════════════
#  Config
# ══════════════════════════════════════════════════════════════════════════
def _load_config(path: str = CONFIG_PATH) -> Dict:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            d = json.load(f)
        return d if isinstance(d, dict) else {}
    except (OSError, ValueError):
        return {}

def _config_number(cfg: Dict, key: str, default, cast=int):
    try:
        return cast(cfg.get(key, default))
    except (TypeError, ValueError):
        return default

def _setup_logging(verbose: bool) -> None:
    if not verbose:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s [%(name)s] %(message)s"))
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)


# ══════════════════════════════════════════════════════════════════════════
#  Output
# ══════════════════════════════════════════════════════════════════════════
def _print_items(store: PinStore) -> None:
    items = store.items
    if not items:
        print("No pins.")
        return
    for pos, item in enumerate(items, 1):
        if pos == store.max_visible_pins + 1:
            print("  -- overflow --")
        state = "MISSING" if item.is_missing else item.window.runtime_id
        print(f"  [{pos}] {item.tab_label[:60]}  ({state})  id={item.id}")

def _print_diag(store: PinStore) -> None:
    for line in store.diagnostics.summary_lines():
        print(f"[DIAG] {line}")
    for item in store.items:
        ref = item.reference
        method = item.method.value if item.method else "none"
        print(f"[DIAG]   {item.id}  method={method}  "
              f"number={ref.os_window_number}  runtime={ref.last_known_runtime_id}")
        print(f"[DIAG]     signature={reference_signature(ref)}")

def _print_windows(store: PinStore, windows: List[WindowSnapshot]) -> None:
    if not windows:
        print("No windows.")
        return
    for w in windows:
        mark = "*" if store.is_pinned(w) else " "
        state = " MIN" if w.is_minimized else ""
        print(f" {mark} {w.runtime_id:<16} {w.owner_app_name}  \"{w.title[:60]}\"{state}")


# ══════════════════════════════════════════════════════════════════════════
#  Lookups for CLI arguments
# ══════════════════════════════════════════════════════════════════════════
def _resolve_pin(store: PinStore, token: str) -> Optional[PinnedItem]:
    """Accept a 1-based position or a pin id (unique prefixes allowed)."""
    items = store.items
    token = token.strip()
    if token.isdigit():
        pos = int(token)
        return items[pos - 1] if 1 <= pos <= len(items) else None
    exact = store.item(token)
    if exact is not None:
        return exact
    prefixed = [i for i in items if i.id.startswith(token)]
    return prefixed[0] if len(prefixed) == 1 else None

def _resolve_window(windows: List[WindowSnapshot], runtime_id: str) -> Optional[WindowSnapshot]:
    return next((w for w in windows if w.runtime_id == runtime_id.strip()), None)

def _activate_item(item: PinnedItem) -> bool:
    if item.is_missing:
        print(PinStore.mapping_description(item))
        return False
    return activate_window(item.window)


# ══════════════════════════════════════════════════════════════════════════
#  Commands
# ══════════════════════════════════════════════════════════════════════════
def run_watch(store: PinStore, interval: float) -> None:
    """Poll the window list and print the pin view whenever it changes."""
    last = None
    try:
        while True:
            store.reconcile(live_windows())
            view = [(i.id, i.window.runtime_id if i.window else None)
                    for i in store.items]
            if view != last:
                print(time.strftime("%H:%M:%S"))
                _print_items(store)
                last = view
            time.sleep(max(0.1, interval))
    except KeyboardInterrupt:
        pass


_MODIFIERS = {
    "ctrl": "MOD_CONTROL", "control": "MOD_CONTROL",
    "alt": "MOD_ALT",
    "shift": "MOD_SHIFT",
    "win": "MOD_WIN", "windows": "MOD_WIN", "meta": "MOD_WIN",
}


def _virtual_key(name: str) -> Optional[int]:
    if len(name) == 1 and name.isalnum():
        return ord(name.upper())
    if name[:1] == "f" and name[1:].isdigit() and 1 <= int(name[1:]) <= 24:
        return win32con.VK_F1 + int(name[1:]) - 1
    return None


def _parse_hotkey(keys: str) -> Optional[Tuple[int, int]]:
    """'ctrl+alt+1' -> (modifier mask, virtual key); None unless exactly one key."""
    modifiers, vk = 0, None
    for name in re.split(r"[+\-]", keys.lower()):
        name = name.strip()
        if not name:
            continue
        if name in _MODIFIERS:
            modifiers |= getattr(win32con, _MODIFIERS[name])
            continue
        if vk is not None:
            return None
        vk = _virtual_key(name)
        if vk is None:
            return None
    return None if vk is None else (modifiers, vk)


def _hotkey_bindings(cfg: Dict) -> List[Tuple[str, str]]:
    """(keys, pin) pairs from config "hotkeys": [{"keys": ..., "pin": ...}]."""
    out = []
    for entry in cfg.get("hotkeys") or []:
        if isinstance(entry, dict) and entry.get("keys") and entry.get("pin"):
            out.append((str(entry["keys"]), str(entry["pin"])))
    return out


def _on_hotkey(store: PinStore, pin: str) -> bool:
    store.reconcile(live_windows())
    item = _resolve_pin(store, pin)
    if item is None:
        print(f"  [warn] hotkey target {pin!r} matches no pin")
        return False
    return _activate_item(item)


def run_hotkey_listener(store: PinStore, cfg: Dict) -> None:
    """Register one global hotkey per configured pin and activate on press."""
    targets: Dict[int, str] = {}
    for hotkey_id, (keys, pin) in enumerate(_hotkey_bindings(cfg), 1):
        parsed = _parse_hotkey(keys)
        if parsed is None:
            print(f"  Skip invalid hotkey: {keys}")
            continue
        try:
            win32gui.RegisterHotKey(None, hotkey_id, *parsed)
        except Exception as exc:
            print(f"  Failed {keys}: {exc}")
            continue
        targets[hotkey_id] = pin
        print(f"  Registered {keys} -> pin {pin}")
    if not targets:
        print("No hotkeys registered.")
        return
    try:
        while True:
            rc, msg = win32gui.GetMessage(None, 0, 0)
            # msg = (hwnd, message, wParam, lParam, time, point)
            if rc <= 0 or msg[1] == win32con.WM_QUIT:
                break
            if msg[1] == win32con.WM_HOTKEY and msg[2] in targets:
                _on_hotkey(store, targets[msg[2]])
    except KeyboardInterrupt:
        pass
    finally:
        for hotkey_id in targets:
            try:
                win32api.UnregisterHotKey(None, hotkey_id)
            except Exception as exc:
                logger.debug("UnregisterHotKey(%d) failed: %s", hotkey_id, exc)


# ══════════════════════════════════════════════════════════════════════════
#  CLI entry point
# ══════════════════════════════════════════════════════════════════════════
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Pin individual windows and jump back to them later."
    )
    p.add_argument("--config", default=CONFIG_PATH)
    p.add_argument("--pins", default=None,
                   help="Pin list path (default from config, else pins.json)")
    p.add_argument("--verbose", "-v", action="store_true")
    s = p.add_subparsers(dest="cmd", required=True)

    s.add_parser("windows", help="List live windows and their runtime ids")

    sp = s.add_parser("list", help="Show pins and whether each is matched")
    sp.add_argument("--diagnostics", action="store_true")

    sp = s.add_parser("pin", help="Pin (or unpin) a live window")
    sp.add_argument("runtime_id")

    sp = s.add_parser("unpin")
    sp.add_argument("pin")

    sp = s.add_parser("rename", help="Set a custom name; omit NAME to clear")
    sp.add_argument("pin")
    sp.add_argument("name", nargs="*")

    sp = s.add_parser("reassign", help="Point a pin at a different live window")
    sp.add_argument("pin")
    sp.add_argument("runtime_id")

    sp = s.add_parser("move", help="Move a pin to a 1-based position")
    sp.add_argument("pin")
    sp.add_argument("position", type=int)

    sp = s.add_parser("activate", help="Bring a pinned window to the front")
    sp.add_argument("pin")

    s.add_parser("prune", help="Remove every pin that is currently missing")

    sp = s.add_parser("watch")
    sp.add_argument("--interval", type=float, default=None)

    s.add_parser("hotkeys", help="Listen for the hotkeys in config.json")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _setup_logging(args.verbose)

    cfg        = _load_config(args.config)
    pins_path  = args.pins or str(cfg.get("pins_path") or DEFAULT_PINS_PATH)
    max_vis    = _config_number(cfg, "max_visible_pins", DEFAULT_MAX_VISIBLE_PINS)
    store      = PinStore(JsonPinStorage(pins_path), max_visible_pins=max_vis)

    if args.cmd == "hotkeys":
        run_hotkey_listener(store, cfg)
        return 0

    if args.cmd == "watch":
        interval = args.interval
        if interval is None:
            interval = _config_number(cfg, "poll_interval", DEFAULT_POLL_INTERVAL, float)
        run_watch(store, interval)
        return 0

    windows = live_windows()
    store.reconcile(windows)

    if args.cmd == "windows":
        _print_windows(store, windows)
        return 0

    if args.cmd == "list":
        _print_items(store)
        if args.diagnostics:
            _print_diag(store)
        return 0

    if args.cmd == "prune":
        print(f"Removed {store.remove_missing_pins()} missing pins.")
        return 0

    if args.cmd == "pin":
        window = _resolve_window(windows, args.runtime_id)
        if window is None:
            print(f"No live window with runtime id {args.runtime_id!r}.")
            return 1
        pin_id = store.toggle_pin(window)
        print(f"Pinned {window.menu_title!r} -> {pin_id}" if pin_id
              else f"Unpinned {window.menu_title!r}")
        return 0

    item = _resolve_pin(store, args.pin)
    if item is None:
        print(f"No pin matching {args.pin!r}.")
        return 1

    if args.cmd == "unpin":
        store.unpin(item.id)
        print(f"Unpinned {item.tab_label!r}")

    elif args.cmd == "rename":
        store.rename_pin(item.id, " ".join(args.name))
        print(f"Renamed -> {store.item(item.id).tab_label!r}")

    elif args.cmd == "reassign":
        window = _resolve_window(windows, args.runtime_id)
        if window is None:
            print(f"No live window with runtime id {args.runtime_id!r}.")
            return 1
        if window.owner_bundle_id != item.reference.owner_bundle_id:
            print("  [warn] reassigning across applications")
        store.reassign_pin(item.id, window)
        print(f"Reassigned -> {PinStore.mapping_description(store.item(item.id))}")

    elif args.cmd == "move":
        store.move_pin(item.id, max(0, args.position - 1))
        _print_items(store)

    elif args.cmd == "activate":
        return 0 if _activate_item(item) else 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
