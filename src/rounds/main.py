"""Entry point for the round lifecycle engine.

One invocation handles one scheduler tick (or one named job) and exits.
The process is meant to be triggered once a minute by cron or a container
scheduler; there is no internal timer loop.

Usage:
    rounds tick                 # run every job due this minute
    rounds create | open | lock | finalize | recovery
    rounds settle <round-id>
    rounds cancel <round-id> --reason ADMIN_HALT --message "feed outage"

Component wiring order (in build_components):
1. Repositories (SQLite, sharing one RoundDatabase)
2. RoundStateMachine
3. BetSettler
4. ChainLedger (PaperLedger) and AlertNotifier (LogAlertNotifier)
5. RoundService
6. PriceSource (CcxtPriceSource)
7. JobRunner
"""

import argparse
import asyncio
from collections.abc import Callable, Sequence
from typing import Any

from rounds.alerts import LogAlertNotifier
from rounds.config import AppSettings
from rounds.data import RoundDatabase, SqliteBetRepository, SqliteRoundRepository
from rounds.fsm import RoundStateMachine
from rounds.ledger import PaperLedger
from rounds.logging import get_logger, setup_logging
from rounds.models import CancelledBy, Round, RoundJobResult, now_ms
from rounds.prices import CcxtPriceSource, PriceSource
from rounds.scheduler import JobRunner, TickReport
from rounds.service import RoundService
from rounds.settlement import BetSettler


def build_components(
    settings: AppSettings,
    database: RoundDatabase,
    price_source: PriceSource | None = None,
    clock: Callable[[], int] = now_ms,
) -> dict[str, Any]:
    """Build the object graph from settings and a connected database.

    Args:
        settings: Application-wide settings.
        database: Connected RoundDatabase.
        price_source: Override for the ccxt price source (tests, replays).
        clock: Epoch-millisecond clock shared by every component.

    Returns:
        Dict mapping component names to instances.
    """
    round_repository = SqliteRoundRepository(database, clock=clock)
    bet_repository = SqliteBetRepository(database)
    state_machine = RoundStateMachine(round_repository, clock=clock)
    bet_settler = BetSettler(bet_repository, clock=clock)

    service = RoundService(
        settings=settings,
        round_repository=round_repository,
        bet_repository=bet_repository,
        state_machine=state_machine,
        bet_settler=bet_settler,
        ledger=PaperLedger(),
        notifier=LogAlertNotifier(),
        clock=clock,
    )

    if price_source is None:
        price_source = CcxtPriceSource(settings.prices, clock=clock)

    runner = JobRunner(
        service=service,
        price_source=price_source,
        settings=settings.cron,
        start_hours_utc=settings.rounds.start_hours_utc,
        creation_lead_time_ms=settings.rounds.creation_lead_time_ms,
        clock=clock,
    )

    return {
        "round_repository": round_repository,
        "bet_repository": bet_repository,
        "state_machine": state_machine,
        "bet_settler": bet_settler,
        "service": service,
        "price_source": price_source,
        "runner": runner,
    }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rounds", description="Gold vs BTC round engine")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("tick", help="run every job due this minute")
    for job in ("create", "open", "lock", "finalize", "recovery"):
        commands.add_parser(job, help=f"run the {job} job now")

    settle = commands.add_parser("settle", help="settle one CALCULATING round")
    settle.add_argument("round_id")

    cancel = commands.add_parser("cancel", help="cancel a non-terminal round")
    cancel.add_argument("round_id")
    cancel.add_argument("--reason", default="ADMIN_CANCELLED")
    cancel.add_argument("--message", default="Cancelled by operator")

    return parser


def _summarize(result: Any) -> dict[str, Any]:
    """Flatten a job result into log-friendly fields."""
    if isinstance(result, Round):
        return {"round_id": result.id, "round_status": result.status.value}
    if isinstance(result, RoundJobResult):
        summary: dict[str, Any] = {"result": result.status.value}
        if result.round is not None:
            summary.update(_summarize(result.round))
        if result.settlement is not None:
            summary["settlement"] = result.settlement.status.value
        return summary
    if isinstance(result, TickReport):
        return {
            "ran": {job: _summarize(r) for job, r in result.results.items()},
            "failed": result.errors,
        }
    if hasattr(result, "__dataclass_fields__"):
        return {
            name: getattr(value, "value", value)
            for name, value in vars(result).items()
        }
    return {"result": result}


async def run(argv: Sequence[str] | None = None) -> int:
    """Run one CLI command. Returns the process exit code."""
    args = _build_parser().parse_args(argv)

    settings = AppSettings()
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("rounds.main")

    async with RoundDatabase(settings.database.path) as database:
        components = build_components(settings, database)
        runner: JobRunner = components["runner"]
        service: RoundService = components["service"]

        try:
            if args.command == "tick":
                report = await runner.tick()
                logger.info("command_complete", command="tick", **_summarize(report))
                return 0 if report.ok else 1

            if args.command == "cancel":
                result: Any = await service.cancel_round(
                    args.round_id,
                    reason=args.reason,
                    message=args.message,
                    cancelled_by=CancelledBy.ADMIN,
                )
            else:
                result = await runner.run(args.command, getattr(args, "round_id", None))

            logger.info("command_complete", command=args.command, **_summarize(result))
            return 0
        except Exception as exc:
            logger.error("command_failed", command=args.command, error=str(exc), exc_info=True)
            return 1
        finally:
            await components["price_source"].close()


def main() -> None:
    """Synchronous entry point."""
    raise SystemExit(asyncio.run(run()))


if __name__ == "__main__":
    main()
