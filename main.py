"""Entry point for running the diagnostics service."""

from __future__ import annotations

import argparse
import sys

from netdiag import ApplicationContext, bootstrap
from netdiag.measurements.errors import describe_error
from netdiag.measurements.models import RunStatus


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Network diagnostics service")
    parser.add_argument("--config", help="Path to config.yaml", default="config.yaml")
    parser.add_argument("--host", default=None, help="Override web server host")
    parser.add_argument("--port", type=int, default=None, help="Override web server port")
    parser.add_argument("--debug", action="store_true", help="Enable Flask debug mode")
    parser.add_argument("--speedtest", action="store_true", help="Run one throughput test and exit")
    parser.add_argument("--target", default=None, help="Target name for --speedtest")
    parser.add_argument("--trace", metavar="HOST", default=None, help="Trace the route to HOST and exit")
    parser.add_argument("--max-hops", type=int, default=None, help="Hop limit for --trace")
    return parser.parse_args()


def run_speedtest(context: ApplicationContext, target_name: str = None) -> int:
    target = context.catalog.find(target_name) if target_name else None
    if target_name and target is None:
        print(f"Unknown target {target_name!r}", file=sys.stderr)
        return 2

    with context.orchestrator.state.subscribe() as subscription:
        context.orchestrator.start_run(target)
        last_phase = None
        while True:
            state = subscription.get(timeout=1.0)
            if state is None:
                continue
            if state.status is RunStatus.RUNNING and state.phase is not last_phase:
                print(f"[{state.progress_pct:5.1f}%] {state.phase.value}")
                last_phase = state.phase
            if state.is_terminal:
                break
    context.orchestrator.join()

    final = context.orchestrator.state.value
    if final.status is RunStatus.ERROR:
        print(f"Throughput test failed: {final.error}", file=sys.stderr)
        return 1

    print(f"Target:   {final.target.name} ({final.target.city}, {final.target.country})")
    print(f"Ping:     {final.latency_ms} ms{' (estimated)' if final.latency_synthetic else ''}")
    print(f"Jitter:   {final.jitter_ms} ms")
    print(f"Download: {final.download_mbps:.2f} Mbps")
    print(f"Upload:   {final.upload_mbps:.2f} Mbps (simulated)")
    return 0


def run_trace(context: ApplicationContext, host: str, max_hops: int = None) -> int:
    hops = max_hops or context.config.traceroute.max_hops
    print(f"traceroute to {host}, {hops} hops max")
    try:
        for event in context.tracer.trace(host, hops):
            print(event.line)
    except Exception as exc:  # pylint: disable=broad-except
        print(f"Trace failed: {describe_error(exc)}", file=sys.stderr)
        return 1
    return 0


def main() -> None:
    args = parse_args()
    context = bootstrap(args.config)

    if args.speedtest:
        sys.exit(run_speedtest(context, args.target))
    if args.trace:
        sys.exit(run_trace(context, args.trace, args.max_hops))

    context.start()
    host = args.host or context.config.web.host
    port = args.port or context.config.web.port
    try:
        context.web_app.run(host=host, port=port, debug=args.debug, threaded=True)
    finally:
        context.shutdown()


if __name__ == "__main__":
    main()
