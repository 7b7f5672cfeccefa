"""
Rewards API endpoints for the frequent-buyer program.

Handles:
- Reward listing and manual redemption (admin)
- Customer progress lookup
- Audit trail queries
"""
from flask import Blueprint, request, jsonify, g

from ..middleware import require_tenant
from ..models.reward import Reward, RedemptionType
from ..services.audit_service import AuditService
from ..services.redemption_service import RedemptionService, RedemptionInput
from ..services.summary_service import SummaryService
from ..utils.errors import bad_request

rewards_bp = Blueprint('loyalty_rewards', __name__)


def get_current_user():
    """Get current staff email for audit purposes."""
    return request.headers.get('X-Staff-Email', 'api:unknown')


# ==============================================================================
# REWARDS
# ==============================================================================

@rewards_bp.route('/rewards', methods=['GET'])
@require_tenant
def list_rewards():
    """
    List rewards for the tenant.

    Query params:
        customer_id: Filter by POS customer
        status: in_progress, earned, redeemed or revoked
        limit: Max results (default 100)
    """
    query = Reward.query.filter_by(tenant_id=g.tenant_id)

    customer_id = request.args.get('customer_id')
    if customer_id:
        query = query.filter_by(customer_id=customer_id)
    status = request.args.get('status')
    if status:
        query = query.filter_by(status=status)

    limit = min(request.args.get('limit', 100, type=int), 500)
    rewards = query.order_by(Reward.id.desc()).limit(limit).all()

    return jsonify({
        'rewards': [r.to_dict() for r in rewards],
        'count': len(rewards)
    })


@rewards_bp.route('/rewards/<int:reward_id>/redeem', methods=['POST'])
@require_tenant
def redeem_reward(reward_id):
    """
    Redeem an earned reward.

    Request body (all optional):
    {
        "order_id": "ORDER123",
        "customer_id": "CUST1",          # must match the reward's customer
        "redeemed_variation_id": "VAR1",
        "redeemed_value_cents": 1299,
        "location_id": "LOC1",
        "notes": "Given at counter"
    }

    Returns:
        Redemption and updated reward. 409 when the reward is not earned.
    """
    data = request.json or {}

    value_cents = data.get('redeemed_value_cents')
    if value_cents is not None:
        try:
            value_cents = int(value_cents)
        except (ValueError, TypeError):
            return bad_request('redeemed_value_cents must be an integer')

    result = RedemptionService(g.tenant_id).redeem_reward(RedemptionInput(
        tenant_id=g.tenant_id,
        reward_id=reward_id,
        order_id=data.get('order_id'),
        customer_id=data.get('customer_id'),
        redemption_type=RedemptionType.MANUAL_ADMIN,
        redeemed_variation_id=data.get('redeemed_variation_id'),
        redeemed_value_cents=value_cents,
        location_id=data.get('location_id'),
        actor=get_current_user(),
        notes=data.get('notes')
    ))

    return jsonify(result.to_dict())


# ==============================================================================
# CUSTOMER PROGRESS
# ==============================================================================

@rewards_bp.route('/customers/<customer_id>/progress', methods=['GET'])
@require_tenant
def customer_progress(customer_id):
    """
    Per-offer progress for a customer.

    Returns:
        Summaries (one per offer the customer has bought from) and the
        customer's earned rewards awaiting redemption
    """
    summaries = SummaryService(g.tenant_id).get_customer_summaries(customer_id)
    earned = Reward.query.filter_by(
        tenant_id=g.tenant_id,
        customer_id=customer_id,
        status='earned'
    ).order_by(Reward.earned_at).all()

    return jsonify({
        'customer_id': customer_id,
        'offers': [s.to_dict() for s in summaries],
        'earned_rewards': [r.to_dict() for r in earned]
    })


# ==============================================================================
# AUDIT
# ==============================================================================

@rewards_bp.route('/audit', methods=['GET'])
@require_tenant
def list_audit_entries():
    """
    Query the audit trail, newest first.

    Query params:
        customer_id, reward_id, offer_id, action: Filters
        limit: Max results (default 100, max 500)
        offset: Pagination offset
    """
    entries = AuditService(g.tenant_id).list_entries(
        customer_id=request.args.get('customer_id'),
        reward_id=request.args.get('reward_id', type=int),
        offer_id=request.args.get('offer_id', type=int),
        action=request.args.get('action'),
        limit=min(request.args.get('limit', 100, type=int), 500),
        offset=request.args.get('offset', 0, type=int)
    )

    return jsonify({
        'entries': [e.to_dict() for e in entries],
        'count': len(entries)
    })
