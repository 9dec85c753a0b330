"""
时间同步模块 - 向 NTP 服务器查询时间，并按优先级进行故障转移

设计目标：
- 单次查询有超时上限，套接字在任何退出路径上都会释放
- 按配置顺序依次尝试服务器，第一个成功即返回
- 各类失败统一归入 QueryError，全部失败时聚合为 AllServersFailed
"""
import logging
import socket
from datetime import datetime
from typing import Callable, Iterable, List, NamedTuple, Sequence

from ntp_packet import DecodeError, decode_response, encode_request

logger = logging.getLogger(__name__)

DEFAULT_PORT = 123
DEFAULT_TIMEOUT = 3.0
DEFAULT_SERVERS = [
    "time.google.com:123",
    "time.cloudflare.com:123",
    "pool.ntp.org:123",
]


class ServerAddress(NamedTuple):
    """NTP 服务器地址"""
    host: str
    port: int = DEFAULT_PORT

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


class SyncResult(NamedTuple):
    """一次成功同步的结果：应答的服务器及其时间"""
    server: ServerAddress
    time: datetime


class TimeSyncError(Exception):
    """时间同步异常"""


class QueryError(TimeSyncError):
    """单个服务器查询失败"""

    reason = "查询失败"

    def __init__(self, server: ServerAddress, detail: str = ""):
        self.server = server
        self.detail = detail
        message = f"{self.reason}: {server}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class QueryTimeout(QueryError):
    """在超时时间内没有收到响应"""

    reason = "NTP 请求超时"


class ServerUnreachable(QueryError):
    """地址解析失败或发送/接收时发生网络错误"""

    reason = "NTP 服务器不可达"


class ProtocolError(QueryError):
    """收到了响应，但解析失败"""

    reason = "NTP 响应无效"

    def __init__(self, server: ServerAddress, cause: DecodeError):
        self.cause = cause
        super().__init__(server, str(cause))


class AllServersFailed(TimeSyncError):
    """所有服务器均查询失败"""

    def __init__(self, errors: Sequence[QueryError]):
        self.errors = list(errors)
        super().__init__(f"所有 NTP 服务器均失败 ({len(self.errors)} 个)")


def parse_server(text: str) -> ServerAddress:
    """
    解析 host[:port] 形式的服务器地址

    IPv6 地址需写成 [addr]:port，端口省略时默认为 123。

    Raises:
        ValueError: 当主机为空或端口无效时
    """
    text = str(text).strip()
    host, port = text, str(DEFAULT_PORT)
    if text.startswith("["):
        end = text.find("]")
        if end < 0:
            raise ValueError(f"无效的服务器地址: {text}")
        host = text[1:end]
        rest = text[end + 1:]
        if rest:
            if not rest.startswith(":"):
                raise ValueError(f"无效的服务器地址: {text}")
            port = rest[1:]
    elif text.count(":") == 1:
        host, port = text.split(":")

    if not host:
        raise ValueError(f"服务器地址缺少主机名: {text!r}")
    if not port.isdigit() or not 0 < int(port) <= 65535:
        raise ValueError(f"无效的服务器端口: {text}")
    return ServerAddress(host, int(port))


def parse_server_list(servers: Iterable) -> List[ServerAddress]:
    """
    解析服务器列表，保持原有顺序（即查询优先级）

    Raises:
        ValueError: 当列表为空或包含无效地址时
    """
    result = [s if isinstance(s, ServerAddress) else parse_server(s) for s in servers]
    if not result:
        raise ValueError("NTP 服务器列表不能为空")
    return result


def query_server(server: ServerAddress, timeout: float = DEFAULT_TIMEOUT) -> datetime:
    """
    向指定 NTP 服务器发起一次请求，返回服务器的 UTC 时间

    Args:
        server: 服务器地址
        timeout: 等待响应的超时时间（秒）

    Returns:
        带 UTC 时区的 datetime

    Raises:
        QueryTimeout: 超时未收到响应
        ServerUnreachable: 地址解析失败或网络错误
        ProtocolError: 响应报文无效
    """
    try:
        infos = socket.getaddrinfo(server.host, server.port, 0, socket.SOCK_DGRAM)
    except (socket.gaierror, UnicodeError) as e:
        raise ServerUnreachable(server, f"地址解析失败: {e}") from e
    if not infos:
        raise ServerUnreachable(server, "地址解析结果为空")
    family, _, _, _, sockaddr = infos[0]

    try:
        with socket.socket(family, socket.SOCK_DGRAM) as sock:
            sock.settimeout(timeout)
            sock.connect(sockaddr)
            sock.send(encode_request())
            data = sock.recv(1024)
    except socket.timeout as e:
        raise QueryTimeout(server, f"{timeout}s") from e
    except OSError as e:
        raise ServerUnreachable(server, str(e)) from e

    try:
        return decode_response(data)
    except DecodeError as e:
        raise ProtocolError(server, e) from e


def resolve(
    servers: Sequence[ServerAddress],
    timeout: float = DEFAULT_TIMEOUT,
    query: Callable[[ServerAddress, float], datetime] = query_server,
) -> SyncResult:
    """
    按顺序查询服务器，返回第一个成功的结果

    依次尝试而不是并发探测：大多数失败是超时，并发会成倍增加请求量。

    Args:
        servers: 按优先级排列的服务器列表
        timeout: 单个服务器的超时时间（秒）
        query: 单次查询函数，默认为 query_server

    Returns:
        SyncResult(server, time)

    Raises:
        AllServersFailed: 所有服务器均失败时，按顺序携带每个服务器的错误
    """
    errors: List[QueryError] = []
    for server in servers:
        logger.debug(f"尝试连接 NTP 服务器: {server}")
        try:
            moment = query(server, timeout)
        except QueryError as e:
            logger.debug(f"NTP 服务器查询失败: {e}")
            errors.append(e)
            continue
        return SyncResult(server, moment)

    raise AllServersFailed(errors)
