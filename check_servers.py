"""
诊断脚本 - 逐个查询 NTP 服务器并打印结果

与后台同步不同，这里不做故障转移，每个服务器都会查询一次，
便于排查哪些服务器不可用。
"""
import argparse
import sys
import time
from typing import Callable, List, NamedTuple, Optional, Sequence

from time_sync import (
    DEFAULT_SERVERS,
    DEFAULT_TIMEOUT,
    QueryError,
    ServerAddress,
    parse_server_list,
    query_server,
)


class ProbeResult(NamedTuple):
    server: ServerAddress
    ok: bool
    detail: str
    elapsed_ms: float


def probe_servers(
    servers: Sequence,
    timeout: float = DEFAULT_TIMEOUT,
    query: Optional[Callable] = None,
    clock: Callable[[], float] = time.monotonic,
) -> List[ProbeResult]:
    """依次查询每个服务器，返回每个服务器的结果"""
    query = query or query_server
    results = []
    for server in parse_server_list(servers):
        started = clock()
        try:
            moment = query(server, timeout)
        except QueryError as e:
            detail = f"{type(e).__name__}: {e}"
            ok = False
        else:
            detail = moment.isoformat()
            ok = True
        results.append(ProbeResult(server, ok, detail, (clock() - started) * 1000.0))
    return results


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='逐个测试 NTP 服务器')
    parser.add_argument('servers', nargs='*', help='NTP 服务器 host[:port]（默认使用内置列表）')
    parser.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT, help='单个服务器超时（秒）')
    args = parser.parse_args(argv)

    try:
        results = probe_servers(args.servers or DEFAULT_SERVERS, timeout=args.timeout)
    except ValueError as e:
        print(f"错误: {e}", file=sys.stderr)
        return 1

    print("=" * 60)
    for result in results:
        mark = "✓" if result.ok else "✗"
        print(f"{mark} {result.server}  {result.detail}  ({result.elapsed_ms:.0f} ms)")
    print("=" * 60)

    return 0 if any(r.ok for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
