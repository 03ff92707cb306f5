from agent.errors import LoopDetected
from agent.loop_guard import RepetitionDetector, corrective_message
from agent.models import ToolCall
from config import LoopDetectionSettings


def read(path):
    return ToolCall(name="read_file", input={"file_path": path})


def test_identical_ceiling_allows_four_blocks_fifth(clock):
    detector = RepetitionDetector(clock=clock)
    for iteration in range(1, 5):
        assert not detector.check([read("src/app.py")], iteration).is_loop
        clock.advance(61)

    check = detector.check([read("src/app.py")], 5)
    assert check.is_loop
    assert "repeated 5 times (max: 4)" in check.reason


def test_sixteenth_root_listing_is_blocked(clock):
    settings = LoopDetectionSettings(
        max_same_tool_calls=15,
        read_only_multiplier=1,
        max_identical_calls=100,
        benign_identical_calls=100,
    )
    detector = RepetitionDetector(settings=settings, clock=clock)
    listing = ToolCall(name="list_directory", input={"path": "."})

    for iteration in range(1, 8):
        assert not detector.check([listing, listing], iteration).is_loop
        clock.advance(61)

    check = detector.check([listing, listing], 8)
    assert check.is_loop
    assert 'called 16 times' in check.reason
    message = corrective_message(check)
    assert message.startswith("STOP: Infinite loop detected.")
    assert "Do not repeat the same tool calls." in message


def test_benign_root_listing_has_its_own_ceiling(clock):
    detector = RepetitionDetector(clock=clock)
    listing = ToolCall(name="list_directory", input={"path": "."})
    for iteration in range(1, 4):
        assert not detector.check([listing], iteration).is_loop
        clock.advance(61)
    assert detector.check([listing], 4).is_loop


def test_rapid_identical_calls_are_flagged(clock):
    detector = RepetitionDetector(clock=clock)
    grep = ToolCall(name="grep_search", input={"pattern": "TODO"})
    assert not detector.check([grep], 1).is_loop
    clock.advance(1)
    assert not detector.check([grep], 2).is_loop
    clock.advance(1)
    check = detector.check([grep], 3)
    assert check.is_loop
    assert check.reason.startswith("Rapid repeated calls")


def test_distinct_write_batch_raises_ceiling(clock):
    detector = RepetitionDetector(clock=clock)
    batch = [ToolCall(name="write_file", input={"file_path": f"gen/file_{i}.py", "content": "x"})
             for i in range(20)]
    assert not detector.check(batch, 1).is_loop


def test_same_tool_ceiling_applies_to_mutating_tools(clock):
    detector = RepetitionDetector(clock=clock)
    for i in range(15):
        call = ToolCall(name="edit_file", input={"file_path": "a.py", "old_string": str(i), "new_string": "y"})
        assert not detector.check([call], i + 1).is_loop
        clock.advance(1)
    extra = ToolCall(name="edit_file", input={"file_path": "a.py", "old_string": "z", "new_string": "y"})
    assert detector.check([extra], 16).is_loop


def test_old_calls_fall_out_of_the_window(clock):
    detector = RepetitionDetector(clock=clock)
    for iteration in range(1, 8):
        assert not detector.check([read("src/app.py")], iteration).is_loop
        clock.advance(200)
    assert len(detector.history) <= 3


def test_exploration_pattern_allowed_early(clock):
    settings = LoopDetectionSettings(max_identical_calls=1)
    detector = RepetitionDetector(settings=settings, clock=clock)
    grep = ToolCall(name="grep_search", input={"pattern": "def main"})
    assert not detector.check([grep], 1).is_loop
    clock.advance(61)
    # read_file after a search is exploration, so the identical ceiling is not applied
    assert not detector.check([read("src/app.py"), read("src/app.py")], 2).is_loop


def test_exploration_pattern_not_allowed_late(clock):
    settings = LoopDetectionSettings(max_identical_calls=1)
    detector = RepetitionDetector(settings=settings, clock=clock)
    grep = ToolCall(name="grep_search", input={"pattern": "def main"})
    assert not detector.check([grep], 5).is_loop
    clock.advance(61)
    assert detector.check([read("src/app.py"), read("src/app.py")], 6).is_loop


def test_blocked_batch_still_counts_and_clear_resets(clock):
    detector = RepetitionDetector(clock=clock)
    for iteration in range(1, 6):
        detector.check([read("x.py")], iteration)
        clock.advance(61)
    assert len(detector.history) == 5
    detector.clear()
    assert detector.history == []
    assert not detector.check([read("x.py")], 6).is_loop


def test_loop_check_converts_to_error(clock):
    detector = RepetitionDetector(clock=clock)
    for iteration in range(1, 6):
        check = detector.check([read("y.py")], iteration)
        clock.advance(61)
    error = check.to_error()
    assert isinstance(error, LoopDetected)
    assert error.reason == check.reason
    assert error.suggestion == check.suggestion
