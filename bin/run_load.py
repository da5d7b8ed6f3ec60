#!/usr/bin/env python3
"""
FLOW-Load: rate-controlled HTTP load generator

Reads target URLs from a file and issues GET requests at a fixed rate,
aggregating latency and status codes into live statistics.

Key Design Principles:
- Paced dispatch: one request per 1/rate tick; missed ticks coalesce into one
- Fan-out: every request runs as its own task; the dispatcher never waits
- Single owner: only the control loop touches the statistics, so no locks
- Bounded queues: URLs and outcomes flow through queues of fixed capacity

Control loop event sources (one serviced per iteration):
    tick     -> pull next URL, launch request task
    outcome  -> StatsAggregator.record()
    command  -> PRINT: latency histogram | QUIT: final report, stop

Author: FLOW-Load Team
Version: 1.0.0
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import math
import os
import signal
import sys
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Iterator, Optional

import aiohttp
from tqdm import tqdm

from load_stats import SampleOutcome, StatsAggregator
from single_request import (
    MAX_IDLE_CONNECTIONS,
    REQUEST_TIMEOUT_SEC,
    RewriteRule,
    create_session,
    execute_request,
    load_url_source,
    parse_path_rule,
)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class Config:
    """Main application configuration."""
    input_path: str

    rate: int = 10
    seconds: int = 10

    # Rewriting
    host: str = ""
    path: str = ""

    input_format: Optional[str] = None
    url_col: str = "url"

    # 0 means uncapped: one task per dispatched request, however many
    max_inflight: int = 0
    max_connections: int = MAX_IDLE_CONNECTIONS

    # The timeout budget is only applied when enforce_timeout is set
    timeout_sec: float = REQUEST_TIMEOUT_SEC
    enforce_timeout: bool = False

    url_buffer: int = 1000
    outcome_buffer: int = 1000
    progress_every: int = 1000

    show_progress: bool = False
    keyboard: bool = True

    def rewrite_rule(self) -> Optional[RewriteRule]:
        """Rewrite rule for the executor, or None when no host override is set."""
        if not self.host:
            return None
        path_rule = parse_path_rule(self.path) if self.path else None
        return RewriteRule(host=self.host, path_rule=path_rule)


def validate_config(cfg: Config) -> None:
    """
    Reject configurations that cannot start a run.

    Raises:
        ValueError: On the first invalid setting found
    """
    if not cfg.input_path:
        raise ValueError("an input URL file is required")
    if cfg.rate <= 0:
        raise ValueError(f"rate must be positive, got {cfg.rate}")
    if cfg.seconds <= 0:
        raise ValueError(f"seconds must be positive, got {cfg.seconds}")
    if cfg.path:
        parse_path_rule(cfg.path)
    if cfg.input_format not in (None, "text", "csv", "parquet"):
        raise ValueError(f"Unsupported input format: {cfg.input_format}")
    if cfg.max_inflight < 0:
        raise ValueError("max_inflight must be >= 0")
    if cfg.url_buffer <= 0 or cfg.outcome_buffer <= 0:
        raise ValueError("queue capacities must be positive")


def parse_args(argv: Optional[list[str]] = None) -> Config:
    """Parse command line arguments or JSON config file."""
    p = argparse.ArgumentParser(
        description="FLOW-Load: rate-controlled HTTP GET load generator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_load.py urls.txt --rate 50 --seconds 30
  python run_load.py urls.txt --host staging:8080 --path /v1:/v2
  python run_load.py --config load.json
"""
    )

    p.add_argument("input_path", nargs="?", help="File with one URL per line")
    p.add_argument("--config", type=str, help="Path to JSON config file")

    p.add_argument("--rate", type=int, default=10, help="Requests per second")
    p.add_argument("--seconds", type=int, default=10, help="Run duration")
    p.add_argument("--host", type=str, default="", help="Send every request to this host[:port]")
    p.add_argument("--path", type=str, default="", help="Path rewrite rule <raw>:<new>")

    p.add_argument("--input_format", type=str, default=None, choices=["text", "csv", "parquet"])
    p.add_argument("--url", dest="url_col", type=str, default="url")

    p.add_argument("--max_inflight", type=int, default=0, help="Cap on in-flight requests (0 = uncapped)")
    p.add_argument("--max_connections", type=int, default=MAX_IDLE_CONNECTIONS)
    p.add_argument("--timeout", dest="timeout_sec", type=float, default=REQUEST_TIMEOUT_SEC)
    p.add_argument("--enforce_timeout", action="store_true")

    p.add_argument("--progress", dest="show_progress", action="store_true")
    p.add_argument("--no_keyboard", action="store_true")

    args = p.parse_args(argv)

    if args.config:
        cfg_path = Path(args.config)
        with cfg_path.open("r") as f:
            data = json.load(f)

        cfg = Config(
            input_path=data.get("input", args.input_path or ""),
            rate=int(data.get("rate", 10)),
            seconds=int(data.get("seconds", 10)),
            host=data.get("host", ""),
            path=data.get("path", ""),
            input_format=data.get("input_format"),
            url_col=data.get("url", "url"),
            max_inflight=int(data.get("max_inflight", 0)),
            max_connections=int(data.get("max_connections", MAX_IDLE_CONNECTIONS)),
            timeout_sec=float(data.get("timeout", REQUEST_TIMEOUT_SEC)),
            enforce_timeout=bool(data.get("enforce_timeout", False)),
            url_buffer=int(data.get("url_buffer", 1000)),
            outcome_buffer=int(data.get("outcome_buffer", 1000)),
            progress_every=int(data.get("progress_every", 1000)),
            show_progress=bool(data.get("progress", False)),
            keyboard=bool(data.get("keyboard", True)),
        )
    else:
        cfg = Config(
            input_path=args.input_path or "",
            rate=args.rate,
            seconds=args.seconds,
            host=args.host,
            path=args.path,
            input_format=args.input_format,
            url_col=args.url_col,
            max_inflight=args.max_inflight,
            max_connections=args.max_connections,
            timeout_sec=args.timeout_sec,
            enforce_timeout=args.enforce_timeout,
            show_progress=args.show_progress,
            keyboard=not args.no_keyboard,
        )

    try:
        validate_config(cfg)
    except ValueError as e:
        p.error(str(e))

    return cfg


# =============================================================================
# COMMANDS
# =============================================================================

class Command(Enum):
    """Commands delivered to the control loop by keyboard, signals and timer."""
    PRINT = auto()
    QUIT = auto()


def install_signal_handlers(loop: asyncio.AbstractEventLoop, commands: asyncio.Queue) -> None:
    """Translate SIGINT/SIGTERM into a QUIT command."""
    def _on_signal():
        tqdm.write("\n[Shutdown] Interrupt received. Stopping...")
        commands.put_nowait(Command.QUIT)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal)


def remove_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.remove_signal_handler(sig)


async def quit_after(seconds: float, commands: asyncio.Queue) -> None:
    """Send QUIT once the run duration has elapsed."""
    await asyncio.sleep(seconds)
    await commands.put(Command.QUIT)


class KeyboardListener:
    """
    Raw-mode stdin reader: pressing `d` sends a PRINT command.

    The terminal is put into cbreak mode (one byte at a time, no echo)
    for the lifetime of the context and restored afterwards. Does nothing
    when stdin is not a terminal.
    """

    KEY_PRINT = b"d"

    def __init__(self, loop: asyncio.AbstractEventLoop, commands: asyncio.Queue, enabled: bool = True):
        self._loop = loop
        self._commands = commands
        self._enabled = enabled
        self._fd: Optional[int] = None
        self._saved_attrs: Optional[list] = None

    def __enter__(self) -> "KeyboardListener":
        if not self._enabled or not sys.stdin.isatty():
            return self

        import termios

        fd = sys.stdin.fileno()
        self._saved_attrs = termios.tcgetattr(fd)
        attrs = termios.tcgetattr(fd)
        attrs[3] &= ~(termios.ICANON | termios.ECHO)
        attrs[6][termios.VMIN] = 1
        attrs[6][termios.VTIME] = 0
        termios.tcsetattr(fd, termios.TCSANOW, attrs)

        self._fd = fd
        self._loop.add_reader(fd, self._on_key)
        return self

    def _on_key(self) -> None:
        data = os.read(self._fd, 1)
        if not data:
            # stdin closed; stop polling but keep the fd so __exit__ restores the terminal
            self._loop.remove_reader(self._fd)
            return
        if data == self.KEY_PRINT:
            self._commands.put_nowait(Command.PRINT)

    def __exit__(self, *exc) -> None:
        if self._fd is None:
            return
        import termios

        self._loop.remove_reader(self._fd)
        termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_attrs)
        self._fd = None


# =============================================================================
# TICKER
# =============================================================================

class Ticker:
    """
    Periodic tick source on an absolute schedule.

    At most one tick is ever pending: ticks the consumer did not take in
    time collapse into the pending one and the schedule skips ahead.
    """

    def __init__(self, interval: float):
        self.interval = interval
        self._event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time() + self.interval
        while True:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            self._event.set()
            next_at += self.interval
            now = loop.time()
            if next_at <= now:
                next_at += (math.floor((now - next_at) / self.interval) + 1) * self.interval

    async def wait(self) -> None:
        await self._event.wait()
        self._event.clear()

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None


# =============================================================================
# URL FEEDER
# =============================================================================

# Marks the end of the URL source in the URL queue
EXHAUSTED = None


async def feed_urls(source: Iterator[str], urls: asyncio.Queue) -> None:
    """
    Copy the URL source into the bounded queue, in order, then mark exhaustion.

    A source that fails mid-stream ends the input like a short file would.
    """
    try:
        for url in source:
            await urls.put(url)
    except Exception as e:
        tqdm.write(f"[Load] URL source failed, no further requests: {e!r}")
    await urls.put(EXHAUSTED)


# =============================================================================
# DISPATCHER
# =============================================================================

class Dispatcher:
    """
    Turns ticks into request tasks.

    Each tick takes the next URL from the queue and starts an independent
    task for it. A tick is skipped without consuming a URL while the
    in-flight cap (if any) is reached or the outcome queue is full.
    """

    def __init__(
        self,
        *,
        session: aiohttp.ClientSession,
        urls: asyncio.Queue,
        outcomes: asyncio.Queue,
        aggregator: StatsAggregator,
        rate: int,
        rewrite: Optional[RewriteRule] = None,
        max_inflight: int = 0,
        pbar: Optional[tqdm] = None,
    ):
        self.session = session
        self.urls = urls
        self.outcomes = outcomes
        self.aggregator = aggregator
        self.rate = rate
        self.rewrite = rewrite
        self.max_inflight = max_inflight
        self.pbar = pbar
        self.exhausted = False
        self.throttled = 0
        self._inflight: set[asyncio.Task] = set()

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def _held_back(self) -> bool:
        if self.max_inflight > 0 and len(self._inflight) >= self.max_inflight:
            return True
        return self.outcomes.full()

    async def dispatch_next(self) -> bool:
        """
        Handle one tick.

        Returns:
            False once the URL source is exhausted, True otherwise
        """
        if self._held_back():
            self.throttled += 1
            return True

        url = await self.urls.get()
        if url is EXHAUSTED:
            self.exhausted = True
            return False

        self.aggregator.note_dispatch()
        task = asyncio.create_task(self._run_one(url))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        if self.pbar is not None:
            self.pbar.update(1)
        return True

    async def _run_one(self, url: str) -> None:
        outcome = await execute_request(self.session, url, self.rewrite)
        if outcome is not None:
            await self.outcomes.put(outcome)

    async def abandon(self) -> None:
        """Cancel whatever is still in flight; results are not collected."""
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


# =============================================================================
# CONTROL LOOP
# =============================================================================

async def control_loop(
    *,
    ticker: Ticker,
    dispatcher: Dispatcher,
    aggregator: StatsAggregator,
    outcomes: asyncio.Queue,
    commands: asyncio.Queue,
    emit: Callable[[str], None],
) -> None:
    """
    Service ticks, outcomes and commands until QUIT.

    Exactly one ready source is handled per iteration. A serviced source
    is re-armed at the back of the line, so a busy source cannot starve
    the others.
    """
    pending: dict[str, asyncio.Task] = {
        "tick": asyncio.create_task(ticker.wait()),
        "outcome": asyncio.create_task(outcomes.get()),
        "command": asyncio.create_task(commands.get()),
    }
    try:
        while True:
            done, _ = await asyncio.wait(pending.values(), return_when=asyncio.FIRST_COMPLETED)
            kind = next(k for k, t in pending.items() if t in done)
            result = pending.pop(kind).result()

            if kind == "tick":
                if await dispatcher.dispatch_next():
                    pending["tick"] = asyncio.create_task(ticker.wait())
                else:
                    ticker.stop()

            elif kind == "outcome":
                outcome: SampleOutcome = result
                aggregator.record(outcome)
                pending["outcome"] = asyncio.create_task(outcomes.get())

            elif result is Command.QUIT:
                emit(aggregator.final_report())
                return

            else:
                emit(aggregator.latency_histogram())
                pending["command"] = asyncio.create_task(commands.get())
    finally:
        for task in pending.values():
            task.cancel()
        await asyncio.gather(*pending.values(), return_exceptions=True)
        ticker.stop()


async def run_load(
    cfg: Config,
    session: aiohttp.ClientSession,
    source: Iterator[str],
    commands: asyncio.Queue,
    *,
    emit: Optional[Callable[[str], None]] = None,
    pbar: Optional[tqdm] = None,
) -> tuple[StatsAggregator, Dispatcher]:
    """
    Run one load test until a QUIT command arrives.

    Returns the aggregator and dispatcher so callers can inspect totals.
    """
    emit = emit if emit is not None else tqdm.write

    urls: asyncio.Queue = asyncio.Queue(maxsize=cfg.url_buffer)
    outcomes: asyncio.Queue = asyncio.Queue(maxsize=cfg.outcome_buffer)
    aggregator = StatsAggregator(progress_every=cfg.progress_every, emit=emit)
    dispatcher = Dispatcher(
        session=session,
        urls=urls,
        outcomes=outcomes,
        aggregator=aggregator,
        rate=cfg.rate,
        rewrite=cfg.rewrite_rule(),
        max_inflight=cfg.max_inflight,
        pbar=pbar,
    )
    ticker = Ticker(1.0 / cfg.rate)

    feeder = asyncio.create_task(feed_urls(source, urls))
    ticker.start()
    try:
        await control_loop(
            ticker=ticker,
            dispatcher=dispatcher,
            aggregator=aggregator,
            outcomes=outcomes,
            commands=commands,
            emit=emit,
        )
    finally:
        feeder.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await feeder
        await dispatcher.abandon()

    return aggregator, dispatcher


# =============================================================================
# MAIN
# =============================================================================

def open_source(cfg: Config) -> Iterator[str]:
    """Open the URL input; any failure ends the process before the run starts."""
    try:
        return load_url_source(cfg.input_path, cfg.input_format, cfg.url_col)
    except (OSError, ValueError) as e:
        raise SystemExit(f"[Load] {e}")


async def main(cfg: Config, source: Iterator[str]) -> None:
    """Main entry point."""
    print(f"Start requests[rate:{cfg.rate}, seconds:{cfg.seconds} url_file:{cfg.input_path}]")
    if cfg.rewrite_rule() is not None:
        print(f"[Rewrite] host={cfg.host} path={cfg.path or '-'}")
    if cfg.max_inflight > 0:
        print(f"[Dispatch] In-flight cap: {cfg.max_inflight}")
    if cfg.keyboard and sys.stdin.isatty():
        print("Press <d> To Show Latency Histogram")

    loop = asyncio.get_running_loop()
    commands: asyncio.Queue = asyncio.Queue()
    install_signal_handlers(loop, commands)
    timer = asyncio.create_task(quit_after(cfg.seconds, commands))

    pbar = None
    if cfg.show_progress:
        pbar = tqdm(total=cfg.rate * cfg.seconds, desc="Dispatching", unit="req")

    try:
        async with create_session(cfg.max_connections, cfg.timeout_sec, cfg.enforce_timeout) as session:
            with KeyboardListener(loop, commands, enabled=cfg.keyboard):
                await run_load(cfg, session, source, commands, pbar=pbar)
    finally:
        timer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await timer
        remove_signal_handlers(loop)
        if pbar is not None:
            pbar.close()


def cli() -> None:
    cfg = parse_args()
    source = open_source(cfg)
    try:
        asyncio.run(main(cfg, source))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
