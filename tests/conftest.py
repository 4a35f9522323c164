import pytest
from datetime import datetime, timedelta
from typing import Optional

from focus_timer.db import SqliteUsageRepository, open_database
from focus_timer.engine import AccountingEngine

APP_A = "c:\\apps\\editor.exe"
APP_B = "c:\\apps\\browser.exe"


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta = timedelta(seconds=1)) -> datetime:
        self.now += delta
        return self.now


class FakeActivity:
    """Activity source whose active subject is set by the test"""

    def __init__(self):
        self.key: Optional[str] = None

    def active_subject_key(self) -> Optional[str]:
        return self.key


class FakeFocusApi:
    """In-memory stand-in for the Win32 focus calls"""

    def __init__(self):
        self.foreground = 0
        self.classes = {}
        self.paths = {}
        self.own_process_foreground = False
        self.fail_with: Optional[OSError] = None
        self.minimized = []
        self.raised = []

    def get_foreground_window(self) -> int:
        return self.foreground

    def get_window_class(self, hwnd: int) -> Optional[str]:
        return self.classes.get(hwnd, "Notepad")

    def get_process_path(self, hwnd: int) -> Optional[str]:
        return self.paths.get(hwnd)

    def is_this_process_foreground(self) -> bool:
        return self.own_process_foreground

    def set_foreground(self, hwnd: int) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.raised.append(hwnd)

    def minimize(self, hwnd: int) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.minimized.append(hwnd)


class FakeIdleApi:
    def __init__(self, idle: timedelta = timedelta(0)):
        self.idle = idle
        self.error: Optional[OSError] = None

    def time_since_last_input(self) -> timedelta:
        if self.error is not None:
            raise self.error
        return self.idle


class FakeTimer:
    """Records scheduled callbacks instead of starting threads"""

    created = []

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args, **self.kwargs)


@pytest.fixture
def conn():
    """Provide an in-memory database connection"""
    conn = open_database(":memory:")
    yield conn
    conn.close()


@pytest.fixture
def repository(conn):
    return SqliteUsageRepository(conn)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 4, 9, 0, 0))


@pytest.fixture
def activity():
    return FakeActivity()


@pytest.fixture
def engine(repository, activity, clock):
    """Provide an engine with two registered apps, A counted and B not"""
    engine = AccountingEngine(repository, activity, clock=clock)
    engine.register_app(APP_A, True)
    engine.register_app(APP_B, False)
    return engine


@pytest.fixture
def focus_api():
    return FakeFocusApi()


@pytest.fixture
def idle_api():
    return FakeIdleApi()


@pytest.fixture
def fake_timer():
    FakeTimer.created = []
    yield FakeTimer
    FakeTimer.created = []


def run_ticks(engine, clock, count):
    """Advance the clock and tick every subject ``count`` times"""
    for _ in range(count):
        clock.advance()
        failures = engine.tick_all()
        assert failures == {}
