"""
Background scheduler for loyalty jobs.

Handles:
- Discount outbox drain (every minute)
- Rolling window expiry (daily at 3 AM UTC)
- Earned reward expiry (daily at 3:05 AM UTC)
"""
import os
import atexit
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler = None
_flask_app = None  # Store Flask app reference for context


def init_scheduler(app):
    """
    Initialize the background scheduler.

    Only runs in production or when ENABLE_SCHEDULER=true.
    Only the main gunicorn process should run the scheduler.
    """
    global _scheduler, _flask_app

    _flask_app = app

    if app.config.get('TESTING'):
        print('[Scheduler] Disabled in testing mode')
        return

    if not (os.getenv('FLASK_ENV') == 'production' or os.getenv('ENABLE_SCHEDULER') == 'true'):
        print('[Scheduler] Disabled (set FLASK_ENV=production or ENABLE_SCHEDULER=true)')
        return

    # Prevent multiple scheduler instances across gunicorn workers
    if os.getenv('SCHEDULER_RUNNING') == 'true':
        print('[Scheduler] Already running in another process')
        return

    try:
        _scheduler = BackgroundScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,  # Combine missed runs
                'max_instances': 1,  # Prevent concurrent runs
                'misfire_grace_time': 3600
            }
        )

        _scheduler.add_job(
            run_outbox_drain,
            trigger=IntervalTrigger(minutes=1),
            id='discount_outbox_drain',
            name='Push reward discounts to Square',
            replace_existing=True
        )

        _scheduler.add_job(
            run_window_expiration,
            trigger=CronTrigger(hour=3, minute=0),
            id='window_expiration',
            name='Expire purchases outside their window',
            replace_existing=True
        )

        _scheduler.add_job(
            run_reward_expiration,
            trigger=CronTrigger(hour=3, minute=5),
            id='reward_expiration',
            name='Revoke fully expired earned rewards',
            replace_existing=True
        )

        _scheduler.start()
        os.environ['SCHEDULER_RUNNING'] = 'true'

        print('[Scheduler] Started with 3 scheduled jobs:')
        print('  - Discount outbox drain: every minute')
        print('  - Window expiration: Daily at 3:00 UTC')
        print('  - Earned reward expiration: Daily at 3:05 UTC')

        atexit.register(shutdown_scheduler)

    except Exception as e:
        print(f'[Scheduler] Failed to initialize: {e}')


def shutdown_scheduler():
    """Gracefully shutdown the scheduler."""
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info('[Scheduler] Shutdown complete')


def run_outbox_drain():
    """Drain pending discount tasks for all tenants."""
    global _flask_app

    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    with _flask_app.app_context():
        try:
            from ..services.discount_outbox import DiscountOutbox

            stats = DiscountOutbox().drain()
            if stats['processed']:
                logger.info(f"[Scheduler] Outbox drain: {stats}")

        except Exception as e:
            logger.error(f'[Scheduler] Outbox drain failed: {e}')


def run_window_expiration():
    """Recompute progress for every tenant's expired purchase windows."""
    global _flask_app

    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    logger.info('[Scheduler] Starting window expiration...')

    with _flask_app.app_context():
        from ..models.tenant import Tenant
        from ..services.expiration_service import ExpirationService

        total = 0
        for tenant in Tenant.query.filter_by(is_active=True).all():
            try:
                result = ExpirationService(tenant.id).process_expired_window_entries()
                total += result['processed']
            except Exception as e:
                logger.error(f'[Scheduler] Window expiration failed for tenant {tenant.id}: {e}')

        logger.info(f'[Scheduler] Window expiration complete: {total} pairs recomputed')


def run_reward_expiration():
    """Revoke earned rewards whose locked purchases have all expired."""
    global _flask_app

    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    logger.info('[Scheduler] Starting earned reward expiration...')

    with _flask_app.app_context():
        from ..models.tenant import Tenant
        from ..services.expiration_service import ExpirationService

        total = 0
        for tenant in Tenant.query.filter_by(is_active=True).all():
            try:
                result = ExpirationService(tenant.id).process_expired_earned_rewards()
                total += result['processed']
            except Exception as e:
                logger.error(f'[Scheduler] Reward expiration failed for tenant {tenant.id}: {e}')

        logger.info(f'[Scheduler] Earned reward expiration complete: {total} revoked')


def get_scheduler_status() -> dict:
    """Get current scheduler status and job info."""
    global _scheduler

    if not _scheduler:
        return {'running': False, 'jobs': []}

    jobs = []
    for job in _scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None
        })

    return {'running': _scheduler.running, 'jobs': jobs}
