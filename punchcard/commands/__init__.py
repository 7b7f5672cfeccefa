"""
CLI Commands for Punchcard.

Usage:
    flask loyalty drain-outbox                    # Push pending reward discounts
    flask loyalty expire-windows --tenant-id 1    # Recompute expired purchase windows
    flask loyalty expire-rewards                  # Revoke fully expired earned rewards
    flask loyalty rebuild-summaries               # Rebuild customer summaries
"""
from .loyalty import init_app as init_loyalty_commands


def init_app(app):
    """Register all CLI commands with the Flask app."""
    init_loyalty_commands(app)
