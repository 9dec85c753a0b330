"""
后台同步模块 - 周期性地向 NTP 服务器同步时间

本模块提供：
- SyncStats：线程安全的同步统计
- SyncLoop：后台同步线程，按间隔执行同步周期，直到收到停止信号

同步结果以事件的形式通知监听者（SyncSucceeded / SyncFailed / DriftCorrection），
本模块不负责格式化和输出。
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union

from clock import Clock, DriftCorrection
from time_sync import (
    DEFAULT_TIMEOUT,
    AllServersFailed,
    QueryError,
    ServerAddress,
    SyncResult,
    parse_server_list,
    resolve,
)

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 10.0


@dataclass(frozen=True)
class SyncSucceeded:
    server: ServerAddress
    time: datetime
    drift: Optional[DriftCorrection] = None


@dataclass(frozen=True)
class SyncFailed:
    errors: List[QueryError] = field(default_factory=list)


SyncEvent = Union[SyncSucceeded, SyncFailed, DriftCorrection]
Listener = Callable[[SyncEvent], None]


class SyncStats:
    """同步统计，successes 永远不大于 attempts"""

    def __init__(self):
        self._lock = threading.Lock()
        self._attempts = 0
        self._successes = 0
        self.last_server: Optional[ServerAddress] = None

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def successes(self) -> int:
        return self._successes

    @property
    def failures(self) -> int:
        with self._lock:
            return self._attempts - self._successes

    @property
    def success_rate(self) -> float:
        """成功率（百分比），尚未尝试时为 0"""
        attempts, successes = self.snapshot()
        if attempts == 0:
            return 0.0
        return successes / attempts * 100.0

    def snapshot(self) -> Tuple[int, int]:
        """返回一致的 (attempts, successes)"""
        with self._lock:
            return self._attempts, self._successes

    def record_success(self, server: ServerAddress):
        with self._lock:
            self._attempts += 1
            self._successes += 1
            self.last_server = server

    def record_failure(self):
        with self._lock:
            self._attempts += 1


class SyncLoop:
    """
    后台同步线程

    状态：未启动 -> 运行中 (每个周期) -> 已停止。
    停止信号会打断周期之间的等待；进行中的查询不会被中断，
    最坏情况下停止延迟为剩余服务器数 × 单个超时。
    """

    def __init__(
        self,
        clock: Clock,
        servers: Sequence,
        interval: float = DEFAULT_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        resolver: Callable[..., SyncResult] = resolve,
        listeners: Iterable[Listener] = (),
    ):
        """
        初始化同步线程

        Args:
            clock: 共享的时钟
            servers: 按优先级排列的服务器列表（字符串或 ServerAddress）
            interval: 同步间隔（秒），默认 10 秒
            timeout: 单个服务器的超时时间（秒），默认 3 秒
            resolver: 故障转移查询函数，默认为 time_sync.resolve
            listeners: 同步事件监听者

        Raises:
            ValueError: 当服务器列表为空或参数无效时
        """
        if interval <= 0:
            raise ValueError(f"同步间隔必须大于0: {interval}")
        if timeout <= 0:
            raise ValueError(f"超时时间必须大于0: {timeout}")

        self.clock = clock
        self.servers = parse_server_list(servers)
        self.interval = interval
        self.timeout = timeout
        self.stats = SyncStats()
        self._resolver = resolver
        self._listeners: List[Listener] = list(listeners)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _emit(self, event: SyncEvent):
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"同步事件监听者异常: {e}", exc_info=True)

    def run_cycle(self) -> Union[SyncSucceeded, SyncFailed]:
        """
        执行一次同步周期

        查询期间不持有时钟锁，只在更新锚点时短暂加锁。
        全部服务器失败时保留现有锚点，时间继续外推。

        Returns:
            本周期的结果事件
        """
        try:
            result = self._resolver(self.servers, self.timeout)
        except AllServersFailed as e:
            self.clock.apply_failure()
            self.stats.record_failure()
            event = SyncFailed(e.errors)
            self._emit(event)
            return event

        correction = self.clock.apply_sync(result.time)
        self.stats.record_success(result.server)
        if correction is not None:
            self._emit(correction)
        event = SyncSucceeded(result.server, result.time, correction)
        self._emit(event)
        return event

    def run(self):
        """同步主循环，阻塞直到 stop() 被调用"""
        logger.info(f"后台同步启动，间隔: {self.interval}s，服务器: {', '.join(map(str, self.servers))}")
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                logger.error(f"同步周期发生未捕获的异常: {e}", exc_info=True)
                self.clock.apply_failure()
                self.stats.record_failure()

            # 可被停止信号打断的等待
            self._stop_event.wait(self.interval)
        logger.info("后台同步线程已退出")

    def start(self):
        """启动后台线程，第一次同步立即执行"""
        if self.running:
            raise RuntimeError("同步线程已在运行")
        if self._stop_event.is_set():
            raise RuntimeError("同步线程已停止，不能再次启动")
        self._thread = threading.Thread(target=self.run, name="ntp-sync", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        """
        通知后台线程退出并等待其结束

        Args:
            timeout: 等待线程结束的最长时间（秒），None 表示一直等待
        """
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("后台同步线程未在超时时间内退出")
            else:
                self._thread = None
