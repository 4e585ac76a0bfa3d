"""
Command-line interface for OneReport billing
"""
from datetime import datetime
from typing import Optional

import click

from core.config import settings
from core.logging import get_logger
from database.base import Base
from database.session import SessionLocal, engine, session_scope

logger = get_logger(__name__)


@click.group()
@click.version_option(version=settings.app_version)
def cli():
    """OneReport billing CLI"""
    pass


@cli.command()
def init_db():
    """Initialize database with tables (use alembic for real deployments)"""
    import d7_billing.models  # noqa: F401

    click.echo("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    click.echo("Database initialized successfully!")


@cli.command()
@click.option("--host", default="0.0.0.0", help="Host to bind to")
@click.option("--port", default=8000, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload")
def runserver(host: str, port: int, reload: bool):
    """Run the FastAPI development server"""
    import uvicorn

    click.echo(f"Starting {settings.app_name} server on {host}:{port}")
    click.echo(f"Environment: {settings.environment}")
    click.echo(f"PayU mode: {settings.payu_mode}")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@cli.command()
@click.option("--now", "now_text", default=None, help="Reference time, ISO format (UTC). Defaults to now.")
@click.option("--dry-run", is_flag=True, help="List due subscriptions without changing them")
def expire_subscriptions(now_text: Optional[str], dry_run: bool):
    """Expire subscriptions whose paid period has ended (run from a scheduler)"""
    from d7_billing.subscription_ledger import SubscriptionLedger

    now = datetime.fromisoformat(now_text) if now_text else datetime.utcnow()

    if dry_run:
        with SessionLocal() as db:
            due = SubscriptionLedger(db).expire_due(now)
            for subscription in due:
                click.echo(f"{subscription.id} user={subscription.user_id} end={subscription.end_date.isoformat()}")
            db.rollback()
        click.echo(f"{len(due)} subscriptions due (dry run)")
        return

    with session_scope() as db:
        expired = SubscriptionLedger(db).expire_due(now)
        count = len(expired)
    logger.info(f"Subscription sweep expired {count} subscriptions")
    click.echo(f"Expired {count} subscriptions")


@cli.command()
def env_info():
    """Display environment information"""
    masked = settings.model_dump()
    click.echo(f"{settings.app_name} v{settings.app_version}")
    click.echo(f"Environment: {settings.environment}")
    click.echo(f"Database: {settings.database_url}")
    click.echo(f"PayU mode: {settings.payu_mode}")
    click.echo(f"PayU merchant key: {masked['payu_merchant_key']}")
    click.echo(f"Email: {'SendGrid' if settings.email_enabled else 'disabled (logged only)'}")
    click.echo(f"Subscription period: {settings.subscription_period_months} month(s)")


def main():
    """Main entry point"""
    cli()


if __name__ == "__main__":
    main()
