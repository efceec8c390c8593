# main.py
import asyncio
from decimal import Decimal
from typing import List, Tuple

import psycopg2
from rich import print
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from txretry.adapters.session_provider_inmemory import (
    InMemorySessionProvider,
    InMemoryVersionedStore,
)
from txretry.adapters.session_provider_psycopg2 import (
    PSYCOPG2_BROKEN_TYPES,
    Psycopg2SessionProvider,
    create_pool_from_settings,
)
from txretry.adapters.session_provider_sqlalchemy import (
    SQLALCHEMY_BROKEN_TYPES,
    SqlAlchemySessionProvider,
    create_engine_from_settings,
)
from txretry.core.config import BackoffConfig
from txretry.core.interfaces.session_provider import SessionProviderPort
from txretry.core.logging_config import configure_logging
from txretry.core.managers.error_classifier import ErrorClassifier, default_classifier
from txretry.core.managers.observers import LoggingAttemptObserver, RetryStatisticsObserver
from txretry.core.managers.retry_executor import RetryExecutor
from txretry.core.settings import TxRetrySettings, app_settings, logger
from txretry.scenarios.hot_account import (
    AccountLedger,
    HotAccountReport,
    InMemoryLedger,
    Psycopg2Ledger,
    SqlLedger,
    compare_concurrency,
    run_hot_account,
)


# main lives at the outermost layer (not in core)
# Instantiates all the concrete adapters
# Wires dependencies together
# Runs the hot-account scenario


def render_reports(reports: List[HotAccountReport], stats: RetryStatisticsObserver) -> Table:
    table = Table(title="Hot-account deposits")
    for column in ("workers", "succeeded", "failed", "retries", "ms", "TPS", "balance", "expected", "correct"):
        table.add_column(column)
    for report in reports:
        table.add_row(
            str(report.concurrency or report.deposits),
            f"{report.succeeded}/{report.deposits}",
            str(report.failed),
            str(report.retries),
            f"{report.elapsed_seconds * 1000:.0f}",
            f"{report.throughput:.1f}",
            str(report.final_balance),
            str(report.expected_balance),
            "yes" if report.correct else "NO",
        )
    table.caption = f"classifications={stats.snapshot()['classifications']}"
    return table


async def build_backend(
    settings: TxRetrySettings,
) -> Tuple[SessionProviderPort, ErrorClassifier, AccountLedger]:
    """Pick provider, classifier and ledger for TXRETRY_SCENARIO_BACKEND."""
    backend = settings.TXRETRY_SCENARIO_BACKEND
    if backend == "database":
        engine = create_engine_from_settings(settings)
        ledger = SqlLedger(engine)
        await ledger.setup()
        return (
            SqlAlchemySessionProvider(engine),
            default_classifier.with_broken_types(*SQLALCHEMY_BROKEN_TYPES),
            ledger,
        )
    if backend == "psycopg2":
        pool = await asyncio.to_thread(create_pool_from_settings, settings)
        ledger = Psycopg2Ledger(pool)
        await ledger.setup()
        return (
            Psycopg2SessionProvider(pool),
            default_classifier.with_broken_types(*PSYCOPG2_BROKEN_TYPES),
            ledger,
        )
    store = InMemoryVersionedStore()
    return InMemorySessionProvider(store, latency=0.002), default_classifier, InMemoryLedger(store)


def close_backend(provider: SessionProviderPort) -> None:
    if isinstance(provider, SqlAlchemySessionProvider):
        provider.dispose()
    elif isinstance(provider, Psycopg2SessionProvider):
        provider.close()


async def run_scenario(settings: TxRetrySettings) -> List[HotAccountReport]:
    config = BackoffConfig.from_app_settings(settings)
    stats = RetryStatisticsObserver()
    observers = [LoggingAttemptObserver(), stats]
    amount = Decimal(settings.TXRETRY_SCENARIO_AMOUNT)
    deposits = settings.TXRETRY_SCENARIO_DEPOSITS

    provider, classifier, ledger = await build_backend(settings)
    executor = RetryExecutor(provider, config, classifier=classifier, observers=observers)
    try:
        reports = [await run_hot_account(executor, ledger, deposits, amount)]
        reports.extend(await compare_concurrency(executor, ledger, (3, 6), deposits, amount))
    finally:
        close_backend(provider)

    print(render_reports(reports, stats))
    return reports


def main():
    # Central logging configuration before anything emits
    configure_logging(app_settings.TXRETRY_LOG_LEVEL)
    app_settings.print_settings(logger)

    try:
        reports = asyncio.run(run_scenario(app_settings))
    except (SQLAlchemyError, psycopg2.Error):
        logger.exception("Scenario setup failed against %s", app_settings.TXRETRY_DATABASE_HOST)
        raise SystemExit(2)

    if not all(report.correct for report in reports):
        logger.error("Final balance does not match the committed deposits")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
