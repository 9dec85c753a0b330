"""
时钟模块 - 以单调时钟为基准外推当前时间

锚点 (anchor) 由一个日历时间和取得该时间时的单调时钟读数组成，
当前时间 = 锚点时间 + (当前单调读数 - 锚点读数)。

本模块提供：
- 一组纯函数，显式传入单调读数，便于验证外推规律
- 线程安全的 Clock 类，供后台同步线程与前台读取者共享
"""
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

# 从未同步成功时使用的初始锚点
DEFAULT_TIME = datetime(2000, 1, 1, tzinfo=timezone.utc)

DRIFT_THRESHOLD = timedelta(milliseconds=100)


@dataclass(frozen=True)
class ClockState:
    """时钟锚点，不可变，只能整体替换"""
    anchor_time: datetime
    anchor_mark: float
    synced: bool = False


@dataclass(frozen=True)
class DriftCorrection:
    """一次超过阈值的时间跳变"""
    predicted: datetime
    observed: datetime
    from_fallback: bool = False

    @property
    def drift(self) -> timedelta:
        """服务器时间减去外推时间"""
        return self.observed - self.predicted

    @property
    def magnitude(self) -> timedelta:
        return abs(self.drift)

    @property
    def direction(self) -> str:
        return "ahead" if self.drift > timedelta(0) else "behind"


def initialize(fallback: datetime, mark: float) -> ClockState:
    return ClockState(fallback, mark)


def extrapolate(state: ClockState, mark: float) -> datetime:
    """返回单调读数为 mark 时的外推时间"""
    return state.anchor_time + timedelta(seconds=mark - state.anchor_mark)


def apply_sync(
    state: ClockState,
    observed: datetime,
    mark: float,
    threshold: timedelta = DRIFT_THRESHOLD,
) -> Tuple[ClockState, Optional[DriftCorrection]]:
    """
    用服务器时间重新锚定

    每次成功同步都会重新锚定；阈值只决定是否上报时间跳变。

    Args:
        state: 当前锚点
        observed: 服务器返回的时间
        mark: 取得 observed 时的单调读数
        threshold: 上报跳变的阈值

    Returns:
        (新锚点, 跳变信息或 None)
    """
    predicted = extrapolate(state, mark)
    correction = None
    if abs(observed - predicted) > threshold:
        correction = DriftCorrection(predicted, observed, from_fallback=not state.synced)
    return ClockState(observed, mark, synced=True), correction


def apply_failure(state: ClockState) -> ClockState:
    """同步失败不改变锚点，继续从上一次的锚点外推"""
    return state


class Clock:
    """
    线程安全的同步时钟

    锁只在读取或替换锚点时持有，网络请求期间从不持有。
    """

    def __init__(
        self,
        fallback: datetime = DEFAULT_TIME,
        drift_threshold: timedelta = DRIFT_THRESHOLD,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        初始化时钟

        Args:
            fallback: 从未同步成功时的初始时间（默认 2000-01-01 00:00:00 UTC）
            drift_threshold: 上报时间跳变的阈值（默认 100 毫秒）
            monotonic: 单调时钟读数函数，测试时可替换
        """
        self.drift_threshold = drift_threshold
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._state = initialize(fallback, monotonic())

    @property
    def state(self) -> ClockState:
        with self._lock:
            return self._state

    @property
    def synced(self) -> bool:
        """是否至少同步成功过一次"""
        return self.state.synced

    def now(self) -> datetime:
        """返回当前外推时间，不会阻塞在网络上"""
        with self._lock:
            return extrapolate(self._state, self._monotonic())

    def apply_sync(self, observed: datetime) -> Optional[DriftCorrection]:
        with self._lock:
            self._state, correction = apply_sync(
                self._state, observed, self._monotonic(), self.drift_threshold
            )
        return correction

    def apply_failure(self) -> ClockState:
        with self._lock:
            self._state = apply_failure(self._state)
            return self._state
