"""
日志配置模块 - 负责配置和管理日志系统
"""
import logging
import logging.handlers
from pathlib import Path
from typing import Optional


def setup_logger(log_level: str = "INFO", log_file: Optional[str] = None,
                 max_bytes: int = 10485760, backup_count: int = 5) -> logging.Logger:
    """
    配置日志系统

    各模块通过 logging.getLogger(__name__) 获取 logger，因此这里配置根 logger。

    Args:
        log_level: 日志级别 (DEBUG, INFO, WARNING, ERROR)
        log_file: 日志文件路径，为空时只输出到控制台
        max_bytes: 日志文件最大大小（字节）
        backup_count: 日志文件备份数量

    Returns:
        配置好的Logger对象
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)

    logger = logging.getLogger()
    logger.setLevel(level)

    # 清除已有的处理器
    logger.handlers.clear()

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # 控制台处理器
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # 文件处理器（带轮转）
    if log_file:
        log_path = Path(log_file)
        if log_path.parent != Path('.'):
            log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
