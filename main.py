"""
主程序 - NTP 同步时钟

本程序在后台定期向 NTP 服务器同步时间，并在前台按固定间隔显示当前时间：
- 多个 NTP 服务器按优先级故障转移
- 网络中断时继续用单调时钟外推时间
- 可选显示同步统计
- 收到 SIGINT/SIGTERM 后优雅退出
"""
import argparse
import copy
import logging
import os
import signal
import sys
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import yaml

from clock import Clock, DriftCorrection
from logger_config import setup_logger
from sync_loop import SyncEvent, SyncFailed, SyncLoop, SyncStats, SyncSucceeded
from time_sync import DEFAULT_SERVERS, DEFAULT_TIMEOUT, parse_server_list, resolve

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"

DEFAULT_CONFIG = {
    'update_interval': 10,
    'display_interval': 1,
    'servers': list(DEFAULT_SERVERS),
    'timeout': DEFAULT_TIMEOUT,
    'timezone_offset': 0,
    'show_stats': False,
    'verbose': False,
    'logging': {
        'level': 'INFO',
        'file': None,
        'max_bytes': 10485760,
        'backup_count': 5,
    },
}


def parse_args(argv=None) -> argparse.Namespace:
    """解析命令行参数，未指定的参数为 None，以便配置文件生效"""
    parser = argparse.ArgumentParser(description='NTP 同步时钟')
    parser.add_argument('-i', '--interval', type=float, default=None,
                        help='NTP 同步间隔（秒，默认 10）')
    parser.add_argument('-d', '--display-interval', type=float, default=None,
                        help='显示间隔（秒，默认 1）')
    parser.add_argument('-s', '--server', action='append', default=None,
                        help='NTP 服务器 host[:port]，可多次指定')
    parser.add_argument('-t', '--timezone-offset', type=int, default=None,
                        help='时区偏移（小时，例如 8 表示 UTC+8）')
    parser.add_argument('-v', '--verbose', action='store_true', default=None,
                        help='输出调试日志')
    parser.add_argument('--show-stats', action='store_true', default=None,
                        help='显示同步统计')
    parser.add_argument('-c', '--config', default=None,
                        help=f'配置文件路径（默认 {DEFAULT_CONFIG_PATH}，不存在时忽略）')
    return parser.parse_args(argv)


def load_config(config_path: str, required: bool = False) -> Dict:
    """
    加载 YAML 配置文件

    Args:
        config_path: 配置文件路径
        required: 文件不存在时是否报错

    Returns:
        Dict: 配置字典，文件不存在且非必需时返回空字典

    Raises:
        FileNotFoundError: 当必需的配置文件不存在时
        ValueError: 当配置文件内容不是映射时
        yaml.YAMLError: 当配置文件格式错误时
    """
    if not os.path.exists(config_path):
        if required:
            raise FileNotFoundError(f"配置文件不存在: {config_path}")
        logger.debug(f"配置文件不存在，使用默认配置: {config_path}")
        return {}

    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ValueError(f"配置文件格式错误：顶层必须是映射: {config_path}")
    logger.info(f"配置文件加载成功: {config_path}")
    return config


def build_config(args: argparse.Namespace, environ=None) -> Dict:
    """
    合并配置，优先级：默认值 < 配置文件 < 环境变量 < 命令行参数
    """
    environ = os.environ if environ is None else environ
    config = copy.deepcopy(DEFAULT_CONFIG)

    if args.config:
        file_config = load_config(args.config, required=True)
    else:
        file_config = load_config(DEFAULT_CONFIG_PATH)

    logging_cfg = file_config.pop('logging', None) or {}
    if not isinstance(logging_cfg, dict):
        raise ValueError("logging 配置必须是映射")
    config.update(file_config)
    config['logging'].update(logging_cfg)

    env_servers = environ.get('NTP_CLOCK_SERVERS')
    if env_servers:
        config['servers'] = [s.strip() for s in env_servers.split(',') if s.strip()]

    overrides = {
        'update_interval': args.interval,
        'display_interval': args.display_interval,
        'servers': args.server,
        'timezone_offset': args.timezone_offset,
        'show_stats': args.show_stats,
        'verbose': args.verbose,
    }
    for key, value in overrides.items():
        if value is not None:
            config[key] = value

    return config


def validate_config(config: Dict):
    """
    验证配置的有效性

    Raises:
        ValueError: 当配置验证失败时
    """
    for key in ('update_interval', 'display_interval', 'timeout'):
        value = config.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ValueError(f"{key} 必须是正数")

    offset = config.get('timezone_offset')
    if isinstance(offset, bool) or not isinstance(offset, int):
        raise ValueError("timezone_offset 必须是整数")
    if not -12 <= offset <= 14:
        raise ValueError(f"timezone_offset 超出范围 (-12 ~ 14): {offset}")

    servers = config.get('servers')
    if not isinstance(servers, list) or not all(isinstance(s, str) for s in servers):
        raise ValueError("servers 必须是字符串列表")
    parse_server_list(servers)

    logger.debug("配置验证通过")


def format_display_line(now: datetime, timezone_offset: int = 0,
                        stats: Optional[SyncStats] = None) -> str:
    """格式化一行显示内容，时区偏移只在这里应用"""
    local = now + timedelta(hours=timezone_offset)
    line = f"时间 (UTC{timezone_offset:+d}): {local.strftime('%Y-%m-%d %H:%M:%S')}"
    if stats is not None:
        attempts, successes = stats.snapshot()
        rate = successes / attempts * 100.0 if attempts else 0.0
        line += f" | 同步: {successes}/{attempts} (成功率 {rate:.1f}%)"
    return line


def log_sync_event(event: SyncEvent):
    """把后台同步事件写入日志"""
    if isinstance(event, DriftCorrection):
        if event.from_fallback:
            logger.info(f"已从默认时间初始化为 NTP 时间: {event.observed.isoformat()}")
        else:
            drift_ms = event.drift / timedelta(milliseconds=1)
            logger.warning(f"校正时间漂移: {drift_ms:+.0f} ms (本地时钟{'偏慢' if event.direction == 'ahead' else '偏快'})")
    elif isinstance(event, SyncSucceeded):
        logger.info(f"NTP 同步成功: {event.server} -> {event.time.isoformat()}")
    elif isinstance(event, SyncFailed):
        logger.error(f"所有 NTP 服务器均失败，继续使用外推时间 ({len(event.errors)} 个错误)")
        for error in event.errors:
            logger.debug(f"  {error}")


class ClockApp:
    """
    时钟应用主类

    负责把时钟、后台同步线程、日志适配器和显示循环组装在一起。
    """

    def __init__(self, config: Dict, resolver: Callable = resolve,
                 output: Callable[[str], None] = print, handle_signals: bool = True):
        """
        初始化时钟应用

        Args:
            config: 已验证的配置字典
            resolver: 故障转移查询函数（测试时可替换）
            output: 显示输出函数，默认为 print
            handle_signals: 是否注册 SIGINT/SIGTERM 处理器

        Raises:
            ValueError: 当服务器列表为空或无效时
        """
        self.config = config
        self.output = output
        self.display_interval = config['display_interval']
        self.timezone_offset = config['timezone_offset']
        self.show_stats = config['show_stats']
        self.start_time = datetime.now()
        self._shutdown = threading.Event()

        self.clock = Clock()
        self.sync_loop = SyncLoop(
            self.clock,
            config['servers'],
            interval=config['update_interval'],
            timeout=config['timeout'],
            resolver=resolver,
            listeners=[log_sync_event],
        )

        if handle_signals:
            # 注册信号处理器（仅Unix系统有 SIGTERM）
            if hasattr(signal, 'SIGINT'):
                signal.signal(signal.SIGINT, self._signal_handler)
            if hasattr(signal, 'SIGTERM'):
                signal.signal(signal.SIGTERM, self._signal_handler)

        logger.info("时钟应用初始化完成")

    @property
    def running(self) -> bool:
        return not self._shutdown.is_set()

    def _signal_handler(self, signum, frame):
        """信号处理器，用于优雅退出"""
        signal_name = signal.Signals(signum).name if hasattr(signal, 'Signals') else str(signum)
        logger.info(f"接收到信号 {signal_name} ({signum})，准备优雅退出...")
        self.shutdown()

    def shutdown(self):
        self._shutdown.set()

    def display_once(self) -> str:
        stats = self.sync_loop.stats if self.show_stats else None
        return format_display_line(self.clock.now(), self.timezone_offset, stats)

    def run(self):
        """
        运行时钟应用

        启动后台同步线程，然后按显示间隔输出当前时间，直到收到退出信号。
        """
        logger.info(
            f"配置: 同步间隔={self.config['update_interval']}s, "
            f"显示间隔={self.display_interval}s, 时区偏移={self.timezone_offset}h"
        )
        self.sync_loop.start()
        try:
            while not self._shutdown.wait(self.display_interval):
                self.output(self.display_once())
        finally:
            self._cleanup()

        uptime = datetime.now() - self.start_time
        logger.info(f"时钟已停止，总运行时间: {uptime}")

    def _cleanup(self):
        """停止后台同步线程"""
        logger.debug("开始清理资源...")
        self.sync_loop.stop(timeout=self.sync_loop.timeout * len(self.sync_loop.servers) + 1)
        stats = self.sync_loop.stats
        logger.info(f"同步统计: 成功 {stats.successes}/{stats.attempts}, 成功率 {stats.success_rate:.1f}%")


def main(argv=None) -> int:
    """
    主函数

    程序的入口点，负责：
    1. 解析命令行参数并合并配置
    2. 配置日志系统
    3. 创建并运行时钟应用
    """
    args = parse_args(argv)

    try:
        config = build_config(args)
        validate_config(config)
    except FileNotFoundError as e:
        print(f"错误: {e}", file=sys.stderr)
        return 1
    except yaml.YAMLError as e:
        print(f"错误: 配置文件格式错误: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"错误: 配置错误: {e}", file=sys.stderr)
        return 1

    log_cfg = config['logging']
    setup_logger(
        log_level='DEBUG' if config['verbose'] else log_cfg.get('level', 'INFO'),
        log_file=log_cfg.get('file'),
        max_bytes=log_cfg.get('max_bytes', 10485760),
        backup_count=log_cfg.get('backup_count', 5),
    )

    try:
        logger.info("=" * 60)
        logger.info("NTP 同步时钟启动")
        logger.info("=" * 60)

        app = ClockApp(config)
        app.run()

    except KeyboardInterrupt:
        logger.info("程序被用户中断")
        return 0
    except Exception as e:
        logger.error(f"程序运行失败: {e}", exc_info=True)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
