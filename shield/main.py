"""shield — command line for the traffic policy engine.

Rate limiting, DDoS and abuse detection, and IP list management against
the configured event store.  Verdicts and tables go to stdout, logs to
stderr.

Usage:
    shield check 10.0.0.5 /api/notes
    shield record 10.0.0.5 /api/notes --status 404
    shield ddos monitor --metrics-port 9108
    shield abuse analyze
    shield ip block 203.0.113.7 60 "scraping"

Exit codes: 0 ok, 1 limited / flagged / bad argument, 2 bad configuration,
3 store or broker unavailable, 4 unexpected error.
"""

import argparse
import logging
import signal
import sys
import time

from shield import metrics
from shield.config import load_config
from shield.errors import ConfigurationError, TransientDependencyError
from shield.events import ListType
from shield.ip_lists import DEFAULT_BLOCK_MINUTES, validate_ip
from shield.log import setup_logging
from shield.policy import SecurityPolicy, build_policy

logger = logging.getLogger("shield.main")

EXIT_OK = 0
EXIT_FLAGGED = 1
EXIT_CONFIG = 2
EXIT_UNAVAILABLE = 3
EXIT_ERROR = 4

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down monitor...")
    running = False


def _should_stop() -> bool:
    return not running


def _ts(value: float | None) -> str:
    if value is None:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(value))


def _print_entries(title: str, entries) -> None:
    print(f"{title}:")
    if not entries:
        print("  (none)")
        return
    for e in entries:
        print(f"  {e.ip:<40s} {e.list_type.value:<10s} expires={_ts(e.expires_at):<19s} "
              f"by={e.created_by:<12s} {e.reason}")


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

def cmd_check(policy: SecurityPolicy, args) -> int:
    decision = policy.rate_limiter.admit(validate_ip(args.ip), args.endpoint, args.api_key)
    print(decision.label)
    return EXIT_OK if decision.allowed else EXIT_FLAGGED


def cmd_record(policy: SecurityPolicy, args) -> int:
    event = policy.rate_limiter.record(validate_ip(args.ip), args.endpoint, args.api_key,
                                       status_code=args.status, user_agent=args.user_agent)
    if event is None:
        return EXIT_UNAVAILABLE
    print(f"Recorded request for {event.identifier}")
    return EXIT_OK


def cmd_stats(policy: SecurityPolicy, args) -> int:
    ip = validate_ip(args.ip) if args.ip else None
    summaries = policy.rate_limiter.stats(ip, args.endpoint)
    print("Rate limit statistics (last hour):")
    if not summaries:
        print("  (no requests)")
    for s in summaries:
        print(f"  {s.ip:<40s} {s.key:<50s} requests={s.count:<6d} "
              f"first={_ts(s.first_seen)}  last={_ts(s.last_seen)}")
    return EXIT_OK


def cmd_reset(policy: SecurityPolicy, args) -> int:
    removed = policy.rate_limiter.reset(validate_ip(args.ip), args.endpoint)
    target = f"{args.ip}:{args.endpoint}" if args.endpoint else args.ip
    print(f"Rate limit reset for {target} ({removed} events removed)")
    return EXIT_OK


# ---------------------------------------------------------------------------
# DDoS
# ---------------------------------------------------------------------------

def cmd_ddos_check(policy: SecurityPolicy, args) -> int:
    if args.ip:
        verdict = policy.ddos.detect(validate_ip(args.ip))
        if verdict.is_attack:
            print(f"ATTACK  ip={verdict.ip}  reason={verdict.reason}  rps={verdict.rps}")
            return EXIT_FLAGGED
        print(f"NORMAL  ip={verdict.ip}  rps={verdict.rps}")
        return EXIT_OK
    blocked = policy.ddos.sweep(_should_stop)
    for ip in blocked:
        print(f"BLOCKED  {ip}")
    print(f"DDoS sweep complete: {len(blocked)} IP(s) blocked")
    return EXIT_FLAGGED if blocked else EXIT_OK


def cmd_ddos_monitor(policy: SecurityPolicy, args) -> int:
    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    alert_config = policy.config.alerts
    if "kafka" in alert_config.sinks:
        from confluent_kafka import KafkaException

        from alerting.kafka_sink import ensure_topic

        try:
            ensure_topic(alert_config.kafka_bootstrap_servers, alert_config.kafka_topic)
        except KafkaException as e:
            raise TransientDependencyError(f"kafka unreachable: {e}") from e
    if args.metrics_port:
        metrics.serve(args.metrics_port)
        print(f"Metrics server listening on :{args.metrics_port}/metrics")

    interval = args.interval or policy.config.ddos.window_seconds
    print(f"DDoS monitor started  interval={interval}s  "
          f"threshold={policy.config.ddos.threshold_rps} req/s")
    sweeps = policy.ddos.monitor(_should_stop, interval)
    print(f"Done. {sweeps} sweep(s) run.")
    return EXIT_OK


def cmd_ddos_block(policy: SecurityPolicy, args) -> int:
    entry = policy.ddos.block(validate_ip(args.ip), args.reason)
    print(f"Blocked {entry.ip} until {_ts(entry.expires_at)}: {entry.reason}")
    return EXIT_OK


def cmd_ddos_unblock(policy: SecurityPolicy, args) -> int:
    ip = validate_ip(args.ip)
    if policy.ddos.unblock(ip):
        print(f"IP {ip} unblocked")
    else:
        print(f"IP {ip} had no temporary block")
    return EXIT_OK


def cmd_ddos_stats(policy: SecurityPolicy, args) -> int:
    stats = policy.ddos.stats()
    v = stats.violations
    print("DDoS statistics (last 24 hours):")
    print(f"  ddos events:          {v.total}")
    print(f"  unique attacking IPs: {v.unique_ips}")
    print(f"  last attack:          {_ts(v.last_seen)}")
    print()
    _print_entries("Currently blocked IPs", stats.blocked)
    return EXIT_OK


# ---------------------------------------------------------------------------
# Abuse
# ---------------------------------------------------------------------------

def _print_verdict(verdict) -> None:
    if not verdict.is_abusive:
        print(f"OK      ip={verdict.ip}" + (f"  ({verdict.note})" if verdict.note else ""))
        return
    line = f"ABUSIVE ip={verdict.ip}  reasons={verdict.reason_text}"
    if verdict.block is not None and verdict.block.applied:
        line += f"  blocked={verdict.block.duration_minutes}m"
    print(line)


def cmd_abuse_analyze(policy: SecurityPolicy, args) -> int:
    if args.ip:
        return cmd_abuse_check(policy, args)
    flagged = policy.abuse.analyze_all(_should_stop)
    for verdict in flagged:
        _print_verdict(verdict)
    print(f"Abuse analysis complete: {len(flagged)} IP(s) flagged")
    return EXIT_FLAGGED if flagged else EXIT_OK


def cmd_abuse_check(policy: SecurityPolicy, args) -> int:
    verdict = policy.abuse.analyze(validate_ip(args.ip))
    _print_verdict(verdict)
    return EXIT_FLAGGED if verdict.is_abusive else EXIT_OK


def cmd_abuse_stats(policy: SecurityPolicy, args) -> int:
    v = policy.abuse.stats()
    print("Abuse statistics (last 24 hours):")
    print(f"  abuse events:        {v.total}")
    print(f"  unique abusive IPs:  {v.unique_ips}")
    print(f"  last abuse:          {_ts(v.last_seen)}")
    print()
    print("Top abusive IPs:")
    if not v.top:
        print("  (none)")
    for s in v.top:
        print(f"  {s.ip:<40s} events={s.count:<6d} last={_ts(s.last_seen)}")
    return EXIT_OK


def cmd_abuse_patterns(policy: SecurityPolicy, args) -> int:
    events = policy.abuse.patterns()
    print("Recent abuse patterns (last 24 hours):")
    if not events:
        print("  (none)")
    for e in events:
        patterns = ", ".join(e.metadata.get("patterns", []))
        print(f"  {_ts(e.timestamp)}  {e.ip:<40s} {patterns}")
    return EXIT_OK


# ---------------------------------------------------------------------------
# IP lists
# ---------------------------------------------------------------------------

def cmd_ip_whitelist(policy: SecurityPolicy, args) -> int:
    return _list_action(policy, args, ListType.WHITELIST)


def cmd_ip_blacklist(policy: SecurityPolicy, args) -> int:
    return _list_action(policy, args, ListType.BLACKLIST)


def _list_action(policy: SecurityPolicy, args, list_type: ListType) -> int:
    lists = policy.ip_lists
    name = list_type.value
    if args.action == "list":
        entries = lists.whitelist_list() if list_type == ListType.WHITELIST else lists.blacklist_list()
        _print_entries(f"{name.capitalize()}ed IPs", entries)
        return EXIT_OK
    if not args.ip:
        raise ValueError(f"IP address required for {name} {args.action}")
    if args.action == "add":
        if list_type == ListType.WHITELIST:
            entry = lists.whitelist_add(args.ip, args.reason or "Added to whitelist")
        else:
            entry = lists.blacklist_add(args.ip, args.reason or "Added to blacklist")
        print(f"IP {entry.ip} added to {name}: {entry.reason}")
        return EXIT_OK
    if list_type == ListType.WHITELIST:
        removed = lists.whitelist_remove(args.ip)
    else:
        removed = lists.blacklist_remove(args.ip)
    print(f"IP {args.ip} {'removed from' if removed else 'was not on the'} {name}")
    return EXIT_OK


def cmd_ip_block(policy: SecurityPolicy, args) -> int:
    entry = policy.ip_lists.block(args.ip, args.minutes, args.reason)
    print(f"IP {entry.ip} temporarily blocked until {_ts(entry.expires_at)}: {entry.reason}")
    return EXIT_OK


def cmd_ip_unblock(policy: SecurityPolicy, args) -> int:
    ip = validate_ip(args.ip)
    if policy.ip_lists.unblock(ip):
        print(f"IP {ip} unblocked")
    else:
        print(f"IP {ip} was not blocked")
    return EXIT_OK


def cmd_ip_list(policy: SecurityPolicy, args) -> int:
    _print_entries(f"IP list ({args.type})", policy.ip_lists.list_entries(args.type))
    return EXIT_OK


def cmd_ip_status(policy: SecurityPolicy, args) -> int:
    status = policy.ip_lists.status(args.ip)
    print(f"Status for IP: {status.ip}")
    print(f"  Status: {status.status}")
    if status.entry is not None:
        e = status.entry
        print(f"  List:    {e.list_type.value}")
        print(f"  Reason:  {e.reason}")
        print(f"  Created: {_ts(e.created_at)} by {e.created_by}")
        print(f"  Expires: {_ts(e.expires_at)}")
    return EXIT_OK


def cmd_ip_cleanup(policy: SecurityPolicy, args) -> int:
    deleted = policy.ip_lists.cleanup()
    print(f"Cleaned up {deleted} expired temporary block(s)")
    return EXIT_OK


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shield", description="Traffic policy engine")
    parser.add_argument("-c", "--config", help="YAML config file (default: $SHIELD_CONFIG)")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="errors only")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("check", help="rate limit verdict for a request")
    p.add_argument("ip")
    p.add_argument("endpoint", nargs="?")
    p.add_argument("api_key", nargs="?")
    p.add_argument("--window", type=int, help="window in seconds")
    p.add_argument("--limit", type=int, help="max requests in the window")
    p.add_argument("--burst", type=int, help="burst allowance")
    p.set_defaults(func=cmd_check)

    p = sub.add_parser("record", help="record one request")
    p.add_argument("ip")
    p.add_argument("endpoint", nargs="?")
    p.add_argument("api_key", nargs="?")
    p.add_argument("--status", type=int, help="HTTP status code of the response")
    p.add_argument("--user-agent")
    p.set_defaults(func=cmd_record)

    p = sub.add_parser("stats", help="rate limit statistics")
    p.add_argument("ip", nargs="?")
    p.add_argument("endpoint", nargs="?")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("reset", help="reset rate limit counters")
    p.add_argument("ip")
    p.add_argument("endpoint", nargs="?")
    p.set_defaults(func=cmd_reset)

    ddos = sub.add_parser("ddos", help="DDoS protection").add_subparsers(dest="action", required=True)
    p = ddos.add_parser("check", help="check one IP, or sweep all active IPs")
    p.add_argument("ip", nargs="?")
    p.set_defaults(func=cmd_ddos_check)
    p = ddos.add_parser("monitor", help="sweep continuously until interrupted")
    p.add_argument("--interval", type=float, help="seconds between sweeps (default: window)")
    p.add_argument("--metrics-port", type=int, help="serve Prometheus metrics on this port")
    p.set_defaults(func=cmd_ddos_monitor)
    p = ddos.add_parser("block", help="temporarily block an IP")
    p.add_argument("ip")
    p.add_argument("reason", nargs="?", default="Manual block")
    p.set_defaults(func=cmd_ddos_block)
    p = ddos.add_parser("unblock", help="lift a temporary block")
    p.add_argument("ip")
    p.set_defaults(func=cmd_ddos_unblock)
    p = ddos.add_parser("stats", help="DDoS statistics")
    p.set_defaults(func=cmd_ddos_stats)

    abuse = sub.add_parser("abuse", help="abuse detection").add_subparsers(dest="action", required=True)
    p = abuse.add_parser("analyze", help="analyze one IP, or every recently active IP")
    p.add_argument("ip", nargs="?")
    p.set_defaults(func=cmd_abuse_analyze)
    p = abuse.add_parser("check", help="analyze one IP")
    p.add_argument("ip")
    p.set_defaults(func=cmd_abuse_check)
    p = abuse.add_parser("stats", help="abuse statistics")
    p.set_defaults(func=cmd_abuse_stats)
    p = abuse.add_parser("patterns", help="recent abuse patterns")
    p.set_defaults(func=cmd_abuse_patterns)

    ip = sub.add_parser("ip", help="IP list management").add_subparsers(dest="action", required=True)
    for name, func in (("whitelist", cmd_ip_whitelist), ("blacklist", cmd_ip_blacklist)):
        p = ip.add_parser(name, help=f"manage the {name}")
        p.add_argument("action", choices=("add", "remove", "list"))
        p.add_argument("ip", nargs="?")
        p.add_argument("reason", nargs="?")
        p.set_defaults(func=func)
    p = ip.add_parser("block", help="temporarily block an IP")
    p.add_argument("ip")
    p.add_argument("minutes", nargs="?", type=int, default=DEFAULT_BLOCK_MINUTES)
    p.add_argument("reason", nargs="?", default="Temporary block")
    p.set_defaults(func=cmd_ip_block)
    p = ip.add_parser("unblock", help="remove temp_block and blacklist entries")
    p.add_argument("ip")
    p.set_defaults(func=cmd_ip_unblock)
    p = ip.add_parser("list", help="list entries")
    p.add_argument("type", nargs="?", default="all",
                   choices=("all",) + tuple(t.value for t in ListType))
    p.set_defaults(func=cmd_ip_list)
    p = ip.add_parser("status", help="show the status of an IP")
    p.add_argument("ip")
    p.set_defaults(func=cmd_ip_status)
    p = ip.add_parser("cleanup", help="delete expired temporary blocks")
    p.set_defaults(func=cmd_ip_cleanup)

    return parser


def main(argv=None, policy: SecurityPolicy | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        setup_logging(logging.DEBUG)
    elif args.quiet:
        setup_logging(logging.ERROR)
    else:
        setup_logging(logging.INFO)

    try:
        if policy is None:
            config = load_config(args.config)
            if args.command == "check":
                config = config.with_rate_limit(
                    window_seconds=args.window,
                    burst=args.burst,
                    per_ip=args.limit,
                    per_api_key=args.limit,
                    per_endpoint=args.limit,
                )
            policy = build_policy(config)
        try:
            return args.func(policy, args)
        finally:
            policy.close()
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG
    except TransientDependencyError as e:
        logger.error("Dependency unavailable: %s", e)
        return EXIT_UNAVAILABLE
    except ValueError as e:
        logger.error("%s", e)
        return EXIT_FLAGGED
    except Exception:
        logger.exception("Unexpected error running %s", args.command)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
