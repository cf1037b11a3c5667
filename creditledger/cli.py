import click
from flask import current_app
from flask.cli import with_appcontext
from creditledger.extensions import db, billing_state
from creditledger.errors import BillingError
from creditledger.billing.ledger import LedgerStore
from creditledger.billing.topup_failures import TopUpFailureTracker


def _tracker() -> TopUpFailureTracker:
    return TopUpFailureTracker.from_config(db.session, current_app.config)


@click.group()
def credits():
    """Credit balance ops."""


@credits.command("grant")
@click.argument("user_id")
@click.argument("key")
@click.argument("amount", type=int)
@click.option("--reason", default="manual grant", show_default=True)
@click.option("--idempotency-key", default=None, help="Re-running with the same key is a no-op")
@with_appcontext
def credits_grant(user_id, key, amount, reason, idempotency_key):
    try:
        balance = LedgerStore(db.session).grant(
            user_id, key, amount, source="operator", idempotency_key=idempotency_key, description=reason,
        )
    except BillingError as e:
        raise click.ClickException(e.message)
    click.echo(f"Granted {amount} {key} to {user_id}; balance={balance}")


@credits.command("balance")
@click.argument("user_id")
@click.argument("key", required=False)
@with_appcontext
def credits_balance(user_id, key):
    ledger = LedgerStore(db.session)
    if key:
        click.echo(f"{key}\t{ledger.get_balance(user_id, key)}")
        return
    balances = ledger.get_all_balances(user_id)
    if not balances:
        click.echo("No balances")
    for k, v in balances.items():
        click.echo(f"{k}\t{v}")


@credits.command("history")
@click.argument("user_id")
@click.option("--key", default=None)
@click.option("--limit", type=int, default=20, show_default=True)
@with_appcontext
def credits_history(user_id, key, limit):
    for e in LedgerStore(db.session).history(user_id, key, limit=limit):
        click.echo(
            f"{e.created_at:%Y-%m-%d %H:%M:%S}\t{e.key}\t{e.transaction_type}\t{e.amount:+d}\t"
            f"{e.balance_after}\t{e.source}:{e.source_id or '-'}"
        )


@click.group()
def topup():
    """Top-up failure tracking."""


@topup.command("status")
@click.argument("user_id")
@click.argument("key")
@with_appcontext
def topup_status(user_id, key):
    rows = _tracker().status(user_id, key)
    if not rows:
        click.echo("No failures recorded")
    for r in rows:
        state = "disabled" if r["disabled"] else ("cooldown" if r["suppressed"] else "ok")
        click.echo(
            f"{r['payment_method_id'] or '-'}\t{r['decline_type']}\t{r['decline_code'] or '-'}\t"
            f"count={r['failure_count']}\t{state}\tretry_at={r['retry_at'] or '-'}"
        )


@topup.command("unblock")
@click.argument("user_id")
@click.option("--key", default=None, help="Only this credit key (default: all)")
@with_appcontext
def topup_unblock(user_id, key):
    removed = _tracker().unblock_all(user_id, key)
    click.echo(f"Cleared {removed} failure record(s) for {user_id}")


@click.group()
def plans():
    """Plan catalog."""


@plans.command("list")
@with_appcontext
def plans_list():
    catalog = billing_state()["catalog"]
    if not catalog.plans:
        click.echo("No plans configured")
    for plan in catalog.plans:
        prices = ", ".join(f"{p.id} ({p.amount} {p.currency}/{p.interval})" for p in plan.prices)
        click.echo(f"{plan.id}\t{plan.name}\t{prices}")
        for f in plan.features.values():
            extra = f" ppc={f.price_per_credit}" if f.price_per_credit is not None else ""
            usage = " usage" if f.track_usage else ""
            click.echo(f"  {f.key}\tallocation={f.allocation}\ton_renewal={f.on_renewal}{extra}{usage}")


def register_cli(app):
    app.cli.add_command(credits)
    app.cli.add_command(topup)
    app.cli.add_command(plans)
