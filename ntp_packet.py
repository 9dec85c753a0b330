"""
NTP 报文编解码模块 - 构造请求报文并从响应报文中解析时间

设计目标：
- 只关心 NTPv3 客户端请求与服务器响应中的 transmit timestamp 字段
- 无状态，纯函数，便于单元测试
- 仅使用标准库 struct 完成定点数转换
"""
import struct
from datetime import datetime, timedelta, timezone

PACKET_SIZE = 48
TRANSMIT_OFFSET = 40

# LI = 0, VN = 3, Mode = 3 (client)
CLIENT_MODE_V3 = 0x1B

# 1900-01-01 到 1970-01-01 的秒数
NTP_EPOCH_DELTA = 2208988800

UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_FRACTION_SCALE = 2 ** 32


class DecodeError(Exception):
    """响应报文解析失败"""


class TruncatedResponse(DecodeError):
    """响应报文长度不足，无法读取 transmit timestamp"""

    def __init__(self, length: int):
        self.length = length
        super().__init__(f"NTP 响应长度异常: {length} 字节 (< {PACKET_SIZE})")


class InvalidTimestamp(DecodeError):
    """transmit timestamp 无法表示为有效的日历时间"""


def encode_request() -> bytes:
    """构造 48 字节的 NTPv3 客户端请求，除首字节外全部为 0"""
    return bytes([CLIENT_MODE_V3]) + bytes(PACKET_SIZE - 1)


def encode_timestamp(moment: datetime) -> bytes:
    """
    将日历时间编码为 8 字节 NTP 定点时间戳（32 位秒 + 32 位小数）

    Args:
        moment: 带时区的 datetime

    Returns:
        大端序的 8 字节时间戳

    Raises:
        ValueError: 当时间超出 NTP 时代 0 的表示范围时
    """
    delta = moment - UNIX_EPOCH
    micros = delta // timedelta(microseconds=1)
    seconds, micro_part = divmod(micros, 1_000_000)
    seconds += NTP_EPOCH_DELTA
    if not 0 <= seconds < _FRACTION_SCALE:
        raise ValueError(f"时间超出 NTP 表示范围: {moment.isoformat()}")
    # 向上取整，保证 decode_response 还原出相同的微秒
    fraction = -((-micro_part * _FRACTION_SCALE) // 1_000_000)
    return struct.pack("!II", seconds, fraction)


def decode_response(data: bytes) -> datetime:
    """
    从服务器响应中提取 transmit timestamp 并转换为 UTC 时间

    Args:
        data: 服务器返回的原始报文

    Returns:
        带 UTC 时区的 datetime

    Raises:
        TruncatedResponse: 当报文短于 48 字节时
        InvalidTimestamp: 当时间戳为 0 或无法转换为日历时间时
    """
    if len(data) < PACKET_SIZE:
        raise TruncatedResponse(len(data))

    seconds, fraction = struct.unpack_from("!II", data, TRANSMIT_OFFSET)
    if seconds == 0 and fraction == 0:
        raise InvalidTimestamp("transmit timestamp 为 0，服务器未同步")

    micros = (fraction * 1_000_000) >> 32
    try:
        return UNIX_EPOCH + timedelta(seconds=seconds - NTP_EPOCH_DELTA, microseconds=micros)
    except OverflowError as e:
        raise InvalidTimestamp(f"transmit timestamp 无法转换: {seconds}.{fraction}") from e
