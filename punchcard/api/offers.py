"""
Offer administration API.

Provides REST endpoints for:
- Listing and creating frequent-buyer offers
- Updating and deactivating offers
- Assigning qualifying variations (conflicts return 409)
"""
from flask import Blueprint, request, jsonify, g

from ..middleware import require_tenant
from ..services.offer_service import OfferService
from ..utils.errors import bad_request

offers_bp = Blueprint('loyalty_offers', __name__)


def get_current_user():
    """Get current staff email for audit purposes."""
    return request.headers.get('X-Staff-Email', 'api:unknown')


@offers_bp.route('/offers', methods=['GET'])
@require_tenant
def list_offers():
    """
    List offers for the tenant.

    Query params:
        include_inactive: Include deactivated offers (default false)
    """
    include_inactive = request.args.get('include_inactive', 'false').lower() == 'true'
    offers = OfferService(g.tenant_id).list_offers(active_only=not include_inactive)

    return jsonify({
        'offers': [o.to_dict() for o in offers],
        'count': len(offers)
    })


@offers_bp.route('/offers', methods=['POST'])
@require_tenant
def create_offer():
    """
    Create an offer.

    Request body:
    {
        "brand_name": "Acme",
        "size_group": "12oz",
        "required_quantity": 12,
        "window_months": 12,      # optional
        "name": "Acme 12oz",      # optional
        "description": "..."      # optional
    }
    """
    data = request.json or {}

    for field in ('brand_name', 'size_group', 'required_quantity'):
        if data.get(field) is None:
            return bad_request(f'{field} is required')

    try:
        required_quantity = int(data['required_quantity'])
        window_months = int(data.get('window_months', 12))
    except (ValueError, TypeError):
        return bad_request('required_quantity and window_months must be integers')

    offer = OfferService(g.tenant_id).create_offer(
        brand_name=data['brand_name'],
        size_group=data['size_group'],
        required_quantity=required_quantity,
        window_months=window_months,
        name=data.get('name'),
        description=data.get('description'),
        created_by=get_current_user()
    )

    return jsonify({'success': True, 'offer': offer.to_dict()}), 201


@offers_bp.route('/offers/<int:offer_id>', methods=['GET'])
@require_tenant
def get_offer(offer_id):
    offer = OfferService(g.tenant_id).get_offer(offer_id)
    return jsonify({'offer': offer.to_dict(include_variations=True)})


@offers_bp.route('/offers/<int:offer_id>', methods=['PATCH'])
@require_tenant
def update_offer(offer_id):
    """
    Update name, description, required_quantity or window_months.

    Rewards already in progress keep their original threshold.
    """
    data = request.json or {}
    if not data:
        return bad_request('No changes supplied')

    offer = OfferService(g.tenant_id).update_offer(offer_id, actor=get_current_user(), **data)
    return jsonify({'success': True, 'offer': offer.to_dict()})


@offers_bp.route('/offers/<int:offer_id>/deactivate', methods=['POST'])
@require_tenant
def deactivate_offer(offer_id):
    offer = OfferService(g.tenant_id).deactivate_offer(offer_id, actor=get_current_user())
    return jsonify({'success': True, 'offer': offer.to_dict()})


@offers_bp.route('/offers/<int:offer_id>/variations', methods=['POST'])
@require_tenant
def add_variations(offer_id):
    """
    Assign POS variations to an offer.

    Request body:
    {
        "variations": [
            {"variation_id": "VAR1", "item_name": "Acme Cola", "variation_name": "12oz", "sku": "AC12"}
        ]
    }

    A variation already assigned to another active offer fails the whole
    request with 409 and the list of conflicts.
    """
    data = request.json or {}
    variations = data.get('variations') or []
    if not variations:
        return bad_request('variations is required')

    added = OfferService(g.tenant_id).add_variations(offer_id, variations, actor=get_current_user())

    return jsonify({
        'success': True,
        'variations': [v.to_dict() for v in added],
        'count': len(added)
    }), 201


@offers_bp.route('/offers/<int:offer_id>/variations/<variation_id>', methods=['DELETE'])
@require_tenant
def remove_variation(offer_id, variation_id):
    variation = OfferService(g.tenant_id).remove_variation(offer_id, variation_id, actor=get_current_user())
    return jsonify({'success': True, 'variation': variation.to_dict()})
