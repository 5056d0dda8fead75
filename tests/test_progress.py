import pytest

from services.progress import ProgressReporter, format_eta


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_format_eta():
    assert format_eta(4.4) == "~4s remaining"
    assert format_eta(125) == "~2m 5s remaining"
    assert format_eta(3 * 3600 + 120) == "~3h 2m remaining"
    assert format_eta(-3) == "~0s remaining"


def test_eta_uses_average_time_per_item():
    clock = FakeClock()
    statuses: list[str] = []
    reporter = ProgressReporter(100, on_status=statuses.append, clock=clock)
    reporter.status("Loading")
    clock.now = 10.0
    reporter.advance(25)
    assert reporter.eta_sec() == pytest.approx(30.0)
    reporter.status("Analyzing batch 2/4")
    assert statuses == ["Loading", "Analyzing batch 2/4 (~30s remaining)"]


def test_progress_never_decreases_or_repeats():
    seen: list[int] = []
    reporter = ProgressReporter(10, on_progress=seen.append)
    reporter.advance(5)
    reporter.advance(3)
    reporter.advance(5)
    reporter.advance(50)
    reporter.finish()
    assert seen == [50, 100]
