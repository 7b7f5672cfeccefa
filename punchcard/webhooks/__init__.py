"""
POS webhook blueprints.
"""
from .square import square_webhooks_bp

__all__ = ['square_webhooks_bp']
