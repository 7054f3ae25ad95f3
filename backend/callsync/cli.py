from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from alembic import command
from alembic.config import Config
from sqlalchemy.orm import Session

from callsync.core.config import settings
from callsync.core.database import Base, SessionLocal, engine
from callsync.core.logs import configure_logging
from callsync.models import SyncStatus, TrafficCategory
from callsync.services.audit import SyncLogFilters, query_sync_logs
from callsync.services.sync import sync_from_settings

app = typer.Typer(help="Reconcile affiliate call records against the billing platform.")


@app.callback()
def main(log_level: Optional[str] = typer.Option(None, help="Override LOG_LEVEL")):
    configure_logging(log_level)


@app.command()
def init_db():
    Base.metadata.create_all(bind=engine)
    typer.echo("Tables created")


@app.command()
def migrate():
    """Apply alembic migrations up to head."""
    alembic_ini = Path(__file__).resolve().parents[1] / "alembic.ini"
    config = Config(str(alembic_ini))
    config.set_main_option("sqlalchemy.url", settings.database_url)
    command.upgrade(config, "head")
    typer.echo("Migrations applied")


@app.command()
def sync(
    category: Optional[TrafficCategory] = typer.Option(None, case_sensitive=False),
    batch_size: Optional[int] = typer.Option(None, min=1),
):
    """Run one sync pass and print the summary."""
    db: Session = SessionLocal()
    try:
        summary = sync_from_settings(db, category=category, batch_size=batch_size)
        typer.echo(f"synced={summary.synced} skipped={summary.skipped} failed={summary.failed}")
    finally:
        db.close()


@app.command()
def logs(
    status: Optional[SyncStatus] = typer.Option(None, case_sensitive=False),
    record_id: Optional[int] = None,
    caller_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 50,
):
    db: Session = SessionLocal()
    try:
        filters = SyncLogFilters(
            call_record_id=record_id,
            caller_id=caller_id,
            status=status,
            since=since,
            until=until,
        )
        items, total = query_sync_logs(db, filters, page=1, page_size=limit)
        if not items:
            typer.echo("No logs found")
            return
        typer.echo(f"Showing {len(items)} of {total} log entries")
        for entry in items:
            typer.echo(
                f"{entry.id}\trecord={entry.call_record_id}\tcaller={entry.caller_id}\t"
                f"status={entry.status.value}\tevent={entry.event}\t"
                f"platform={entry.platform_call_id or 'N/A'}\t"
                f"at={entry.attempted_at.isoformat()}\terror={entry.error_message or 'N/A'}"
            )
    finally:
        db.close()


if __name__ == "__main__":
    app()
