import pathlib
import sys

repo_root = pathlib.Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

import pin_matcher as pm
from pin_models import MatchMethod, PinnedWindowReference, WindowFrame, WindowSnapshot


EDITOR = "com.example.editor"


def _window(runtime_id, title, number=None, bundle=EDITOR, role="window",
            subrole=None, frame=None, pid=700):
    return WindowSnapshot(
        runtime_id=runtime_id,
        owner_bundle_id=bundle,
        owner_app_name="Editor",
        title=title,
        pid=pid,
        os_window_number=number,
        role=role,
        subrole=subrole,
        frame=frame,
    )


def _reference(title, number=None, runtime_id=None, bundle=EDITOR, role="window",
               subrole=None, frame=None, signature=None):
    return PinnedWindowReference(
        id="pin-1",
        owner_bundle_id=bundle,
        owner_app_name="Editor",
        title=title,
        os_window_number=number,
        last_known_runtime_id=runtime_id,
        role=role,
        subrole=subrole,
        frame=frame,
        normalized_title=pm.normalized_title(title),
        signature=signature,
    )


def test_normalized_title_folds_case_diacritics_and_whitespace():
    assert pm.normalized_title("  Café Notes \n") == "cafe notes"
    assert pm.normalized_title("ÉCOLE") == pm.normalized_title("ecole")


def test_bucketed_frame_coarsens_position_and_size():
    assert pm.bucketed_frame(WindowFrame(50, 97, 1210, 770)) == "48,96,1200,768"
    assert pm.bucketed_frame(None) == "-"


def test_window_signature_layout():
    w = _window("700-1", " Notes ", frame=WindowFrame(50, 97, 1210, 770))
    assert pm.window_signature(w) == "window|-|notes|48,96,1200,768"


def test_reference_signature_rebuilt_for_legacy_records():
    frame = WindowFrame(100, 120, 1100, 720)
    ref = _reference("Sprint Notes", frame=frame)
    w = _window("700-1", "Sprint Notes", frame=frame)
    assert pm.reference_signature(ref) == pm.window_signature(w)

    ref.signature = "cached"
    assert pm.reference_signature(ref) == "cached"

    assert pm.reference_signature(_reference("x", role=None)) is None


def test_prefers_runtime_id():
    ref = _reference("Project Plan", number=7, runtime_id="900-7",
                     frame=WindowFrame(10, 10, 1200, 760))
    w = _window("900-7", "Project Plan", number=15,
                frame=WindowFrame(12, 11, 1200, 760))

    result = pm.find_best_match(ref, [w], set())

    assert result.window.runtime_id == "900-7"
    assert result.method is MatchMethod.RUNTIME_ID


def test_falls_back_to_signature_after_relaunch():
    old = _window("700-31", "Sprint Notes", number=31, frame=WindowFrame(100, 120, 1100, 720))
    ref = _reference("Sprint Notes", number=99, runtime_id="700-99",
                     frame=old.frame, signature=pm.window_signature(old))
    relaunched = _window("701-45", "Sprint Notes", number=45,
                         frame=WindowFrame(104, 118, 1100, 720), pid=701)

    result = pm.find_best_match(ref, [relaunched], set())

    assert result.window is relaunched
    assert result.method is MatchMethod.SIGNATURE


def test_never_crosses_bundle_ids():
    ref = _reference("Notes", number=5, runtime_id="700-5")
    other = _window("700-5", "Notes", number=5, bundle="com.example.browser")

    assert pm.find_best_match(ref, [other], set()) is None


def test_claimed_windows_are_skipped():
    ref = _reference("Notes", runtime_id="700-5")
    w = _window("700-5", "Notes", number=5)

    assert pm.find_best_match(ref, [w], {"700-5"}) is None
    assert pm.find_best_match(ref, [], set()) is None


def test_window_number_tier_used_when_runtime_id_is_stale():
    ref = _reference("Notes", number=5, runtime_id="700-stale",
                     frame=WindowFrame(0, 0, 800, 600))
    w = _window("701-5", "Renamed", number=5, frame=WindowFrame(600, 400, 500, 300))

    result = pm.find_best_match(ref, [w, _window("701-6", "Notes", number=6)], set())

    assert result.window is w
    assert result.method is MatchMethod.WINDOW_NUMBER


def test_duplicate_window_numbers_fall_through_to_signature():
    frame = WindowFrame(0, 0, 800, 600)
    a = _window("1-5", "Notes", number=5, frame=frame, pid=1)
    b = _window("2-5", "Other", number=5, frame=frame, pid=2)
    ref = _reference("Notes", number=5, frame=frame, signature=pm.window_signature(a))

    result = pm.find_best_match(ref, [b, a], set())

    assert result.window is a
    assert result.method is MatchMethod.SIGNATURE


def test_signature_collision_refuses_to_guess():
    a = _window("700-1", "Workspace", number=1, frame=WindowFrame(100, 100, 1200, 800))
    b = _window("700-2", "Workspace", number=2, frame=WindowFrame(110, 105, 1200, 800))
    ref = _reference("Workspace", runtime_id="700-99", frame=a.frame,
                     signature=pm.window_signature(a))

    assert pm.window_signature(a) == pm.window_signature(b)
    assert pm.find_best_match(ref, [a, b], set()) is None


def test_fallback_runtime_id_not_trusted_when_signature_is_shared():
    frame = WindowFrame(100, 100, 1200, 800)
    ids = pm.RuntimeIdAllocator()
    a = _window(ids.allocate(700, None, "Workspace", frame), "Workspace", frame=frame)
    b = _window(ids.allocate(700, None, "Workspace", frame), "Workspace", frame=frame)
    ref = _reference("Workspace", runtime_id=a.runtime_id, frame=frame,
                     signature=pm.window_signature(a))

    assert pm.is_fallback_runtime_id(a.runtime_id)
    assert pm.find_best_match(ref, [a, b], set()) is None


def test_fallback_runtime_id_trusted_when_signature_is_unique():
    frame = WindowFrame(100, 100, 1200, 800)
    ids = pm.RuntimeIdAllocator()
    a = _window(ids.allocate(700, None, "Workspace", frame), "Workspace", frame=frame)
    elsewhere = _window(ids.allocate(700, None, "Workspace", WindowFrame(900, 0, 600, 400)),
                        "Workspace", frame=WindowFrame(900, 0, 600, 400))
    ref = _reference("Workspace", runtime_id=a.runtime_id, frame=frame,
                     signature=pm.window_signature(a))

    result = pm.find_best_match(ref, [elsewhere, a], set())

    assert result.window is a
    assert result.method is MatchMethod.RUNTIME_ID


def test_fallback_runtime_id_without_signature_needs_single_candidate():
    frame = WindowFrame(100, 100, 1200, 800)
    ids = pm.RuntimeIdAllocator()
    a = _window(ids.allocate(700, None, "Workspace", frame), "Workspace", frame=frame)
    b = _window(ids.allocate(700, None, "Workspace", frame), "Workspace", frame=frame)
    ref = _reference("Workspace", runtime_id=a.runtime_id, role=None, frame=frame)

    assert pm.find_best_match(ref, [a], set()).method is MatchMethod.RUNTIME_ID
    # Identical look-alikes tie in the scored tier as well.
    assert pm.find_best_match(ref, [a, b], set()) is None


def test_pin_with_signature_does_not_pick_between_same_title_windows():
    pinned = _window("8-1", "Workspace", number=1, frame=WindowFrame(0, 0, 1200, 800))
    ref = _reference("Workspace", number=1, runtime_id="8-1", frame=pinned.frame,
                     signature=pm.window_signature(pinned))
    near = _window("8-2", "Workspace", number=2, frame=WindowFrame(60, 60, 1200, 800))
    far = _window("8-3", "Workspace", number=3, frame=WindowFrame(400, 300, 1200, 800))

    assert pm.window_signature(near) != ref.signature
    assert pm.find_best_match(ref, [near, far], set()) is None


def test_pin_with_signature_falls_back_to_single_title_match():
    pinned = _window("8-1", "Workspace", number=1, frame=WindowFrame(0, 0, 1200, 800))
    ref = _reference("Workspace", number=1, runtime_id="8-1", frame=pinned.frame,
                     signature=pm.window_signature(pinned))
    moved = _window("8-2", "Workspace", number=2, frame=WindowFrame(400, 300, 1200, 800))
    unrelated = _window("8-3", "Inbox", number=3, frame=WindowFrame(0, 0, 1200, 800))

    result = pm.find_best_match(ref, [unrelated, moved], set())

    assert result.window is moved
    assert result.method is MatchMethod.EXACT_TITLE


def test_scored_fallback_prefers_exact_title_over_partial():
    ref = _reference("Sprint Notes", role=None)
    exact = _window("700-1", "sprint notes", number=1)
    partial = _window("700-2", "Sprint Notes (copy)", number=2)

    result = pm.find_best_match(ref, [partial, exact], set())

    assert result.window is exact
    assert result.method is MatchMethod.EXACT_TITLE


def test_scored_fallback_accepts_partial_title():
    ref = _reference("Sprint Notes", role=None)
    partial = _window("700-2", "Sprint Notes - Editor", number=2)

    result = pm.find_best_match(ref, [partial, _window("700-3", "Inbox", number=3)], set())

    assert result.window is partial
    assert result.method is MatchMethod.FUZZY_TITLE


def test_scored_fallback_breaks_score_ties_by_frame_distance():
    ref = _reference("Notes", role=None, frame=WindowFrame(0, 0, 800, 600))
    near = _window("700-1", "Notes", number=9, frame=WindowFrame(10, 0, 800, 600))
    farther = _window("700-2", "Notes", number=1, frame=WindowFrame(20, 0, 800, 600))

    assert pm.find_best_match(ref, [farther, near], set()).window is near
    assert pm.find_best_match(ref, [near, farther], set()).window is near


def test_scored_fallback_refuses_exact_ties():
    ref = _reference("Notes", role=None, frame=WindowFrame(0, 0, 800, 600))
    a = _window("700-1", "Notes", number=1, frame=WindowFrame(10, 0, 800, 600))
    b = _window("700-2", "Notes", number=2, frame=WindowFrame(0, 10, 800, 600))

    assert pm.find_best_match(ref, [a, b], set()) is None


def test_score_components():
    ref = _reference("Notes", subrole="Doc", frame=WindowFrame(0, 0, 800, 600))
    w = _window("700-1", "Notes", subrole="Doc", frame=WindowFrame(50, 50, 800, 600))

    score, method = pm.score_candidate(ref, w)

    assert method is MatchMethod.EXACT_TITLE
    assert score == 240 + 55 + 35 + 30
    assert pm.score_candidate(ref, _window("700-2", "Inbox")) == (0, None)


def test_runtime_id_allocator():
    frame = WindowFrame(0, 0, 800, 600)
    first, second = pm.RuntimeIdAllocator(), pm.RuntimeIdAllocator()

    assert first.allocate(42, 7, "Notes", frame) == "42-7"
    a1 = first.allocate(42, None, "Notes", frame)
    a2 = first.allocate(42, None, "Notes", frame)
    b1 = second.allocate(42, None, "notes ", frame)

    assert a1 != a2
    assert a1 == b1
    assert a1.endswith("-0") and a2.endswith("-1")
    assert pm.is_fallback_runtime_id(a1)
    assert not pm.is_fallback_runtime_id("42-7")
    assert not pm.is_fallback_runtime_id(None)
