"""
Admin API blueprints.
"""
from .offers import offers_bp
from .rewards import rewards_bp

__all__ = ['offers_bp', 'rewards_bp']
