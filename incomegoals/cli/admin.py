import asyncio
import click
from incomegoals.core.database import SessionLocal
from incomegoals.core.firebase_service import init_firebase
from incomegoals.models.user import UserProfile, SubscriptionStatus
from incomegoals.services.highlevel_service import HighLevelError, get_highlevel_service
from incomegoals.services.subscription_service import SubscriptionService
import logging

logger = logging.getLogger(__name__)

STATUS_CHOICES = [s.value for s in SubscriptionStatus]


def _init_analytics():
    # Analytics goes to Firestore; commands still work without it
    try:
        init_firebase()
    except Exception as e:
        click.echo(f"⚠ Firebase not initialized, analytics disabled: {e}", err=True)


def _find_user(db, email):
    user = db.query(UserProfile).filter(UserProfile.email == email.lower()).first()
    if not user:
        click.echo(f"❌ User not found: {email}", err=True)
    return user


@click.group()
def cli():
    """Income Goal Calculator admin commands"""
    pass


@cli.command('fix-subscription')
@click.option('--email', required=True, help='User email')
@click.option('--status', 'new_status', required=True, type=click.Choice(STATUS_CHOICES), help='Canonical subscription status')
@click.option('--customer-id', 'customer_id', required=False, help='Stripe customer id to attach')
@click.option('-y', '--yes', 'confirm', is_flag=True, help='Skip confirmation')
def fix_subscription(email, new_status, customer_id, confirm):
    """Force a user's subscription status (audited as manual_fix, synced to the CRM)"""
    db = SessionLocal()
    try:
        user = _find_user(db, email)
        if not user:
            return

        action_desc = f"change {user.email} from {user.subscription_status} to {new_status}"
        if not confirm:
            try:
                if not click.confirm(f"Are you sure you want to {action_desc}?", default=False):
                    click.echo("Aborted")
                    return
            except click.exceptions.Abort:
                click.echo("\nAborted")
                return

        _init_analytics()
        result = asyncio.run(
            SubscriptionService().apply_manual_fix(
                db, email, new_status, stripe_customer_id=customer_id, fixed_by='cli'
            )
        )
        click.echo(f"✓ {user.email}: {result.original_status} -> {result.status}")
        click.echo(f"  profile updated: {result.profile_updated}")
        click.echo(f"  event recorded:  {result.event_recorded}")
        click.echo(f"  CRM synced:      {result.crm_synced}")
    except Exception as e:
        db.rollback()
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


@cli.command('subscription-status')
@click.option('--email', required=True, help='User email')
def subscription_status(email):
    """Show cached and live subscription status for a user"""
    db = SessionLocal()
    try:
        user = _find_user(db, email)
        if not user:
            return

        click.echo(f"User {user.email} (ID: {user.id})")
        click.echo(f"  cached status: {user.subscription_status}")
        click.echo(f"  customer:      {user.stripe_customer_id or '<none>'}")

        _init_analytics()
        status = asyncio.run(SubscriptionService().get_subscription_status(db, user.id))
        click.echo(f"  live status:   {status['status']} (plan: {status.get('plan')})")
        if status.get('degraded'):
            click.echo("  ⚠ billing provider unavailable, live status unknown")
        if status.get('cancel_at_period_end'):
            click.echo(f"  cancels at period end: {status.get('current_period_end')}")
    except Exception as e:
        db.rollback()
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


@cli.command('sync-user')
@click.option('--email', required=True, help='User email')
def sync_user(email):
    """Push a user's profile and subscription tag to the CRM"""
    db = SessionLocal()
    try:
        user = _find_user(db, email)
        if not user:
            return

        result = asyncio.run(get_highlevel_service().sync_profile(user.to_dict(), source='Income Goal Calculator (CLI Sync)'))
        action = 'created' if result['created'] else 'updated'
        click.echo(f"✓ Contact {result['contact_id']} {action} for {user.email}")
        if result['tag_result']:
            click.echo(f"  tag: {result['tag_result']['tag']}, removed: {result['tag_result']['removed']}")
    except HighLevelError as e:
        click.echo(f"❌ CRM error: {e}", err=True)
    except Exception as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


if __name__ == '__main__':
    cli()
