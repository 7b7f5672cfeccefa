"""
Square webhook handlers.

Routes POS events for a merchant to the loyalty intake:
- order.created / order.updated / order.fulfillment.updated: accrue a
  COMPLETED order (and detect reward use at checkout)
- refund.created / refund.updated: reverse accrual for COMPLETED refunds

Webhooks carry either the full order or just its id; in the latter case
the order is fetched from Square. Any per-line failure answers 500 so
Square redelivers; idempotency keys make the retry safe.
"""
from typing import Dict, Any, Tuple
from flask import Blueprint, request, jsonify, current_app

from ..models import Tenant
from ..models.processed_order import OrderSource
from ..services.order_intake import OrderIntakeService
from ..services.square_client import SquareClient
from ..utils.exceptions import PunchcardError

square_webhooks_bp = Blueprint('square_webhooks', __name__)


def get_tenant_from_merchant(merchant_id: str) -> Tenant:
    if not merchant_id:
        return None
    return Tenant.query.filter_by(pos_merchant_id=merchant_id, is_active=True).first()


def _order_from_event(tenant: Tenant, event: Dict[str, Any]) -> Dict[str, Any]:
    """Full order from the event payload, fetching it when only the id is sent."""
    obj = (event.get('data') or {}).get('object') or {}
    if obj.get('order'):
        return obj['order']

    summary = obj.get('order_created') or obj.get('order_updated') or obj.get('order_fulfillment_updated') or {}
    order_id = summary.get('order_id') or (event.get('data') or {}).get('id')
    if not order_id:
        return None
    return SquareClient(tenant.id).retrieve_order(order_id)


# ==================== Handlers ====================

def handle_order_event(tenant: Tenant, event: Dict[str, Any]) -> Tuple[Dict[str, Any], int]:
    order = _order_from_event(tenant, event)
    if not order:
        return {'status': 'ignored', 'reason': 'order_not_found'}, 200
    if order.get('state') != 'COMPLETED':
        return {'status': 'ignored', 'reason': 'order_not_completed', 'state': order.get('state')}, 200

    result = OrderIntakeService(tenant.id).process_order(order, source=OrderSource.WEBHOOK.value)
    status_code = 500 if result['errors'] else 200
    return {'status': 'processed', 'result': result}, status_code


def handle_refund_event(tenant: Tenant, event: Dict[str, Any]) -> Tuple[Dict[str, Any], int]:
    refund = ((event.get('data') or {}).get('object') or {}).get('refund') or {}
    if refund.get('status') != 'COMPLETED':
        return {'status': 'ignored', 'reason': 'refund_not_completed', 'refund_status': refund.get('status')}, 200
    if not refund.get('order_id'):
        return {'status': 'ignored', 'reason': 'refund_without_order'}, 200

    order = SquareClient(tenant.id).retrieve_order(refund['order_id'])
    if not order:
        return {'status': 'ignored', 'reason': 'order_not_found'}, 200

    result = OrderIntakeService(tenant.id).process_order_refunds(order)
    status_code = 500 if result['errors'] else 200
    return {'status': 'processed', 'result': result}, status_code


EVENT_HANDLERS = {
    'order.created': handle_order_event,
    'order.updated': handle_order_event,
    'order.fulfillment.updated': handle_order_event,
    'refund.created': handle_refund_event,
    'refund.updated': handle_refund_event,
}


@square_webhooks_bp.route('/square', methods=['POST'])
def handle_square_webhook():
    """
    Receive a Square webhook event.

    Request body:
    {
        "merchant_id": "MERCHANT1",
        "type": "order.updated",
        "event_id": "...",
        "data": {"object": {"order": {...}} | {"refund": {...}}}
    }
    """
    event = request.get_json(silent=True) or {}
    event_type = event.get('type')
    event_id = event.get('event_id')

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        return jsonify({'status': 'ignored', 'type': event_type})

    tenant = get_tenant_from_merchant(event.get('merchant_id'))
    if not tenant:
        return jsonify({'error': 'Unknown merchant'}), 404

    try:
        body, status_code = handler(tenant, event)
    except PunchcardError as e:
        current_app.logger.error(f"Webhook {event_type} {event_id} failed for tenant {tenant.id}: {e.message}")
        return jsonify({'error': e.message, 'code': e.code}), 500
    except Exception as e:
        current_app.logger.error(f"Webhook {event_type} {event_id} failed for tenant {tenant.id}: {e}")
        return jsonify({'error': str(e)}), 500

    current_app.logger.info(f"Webhook {event_type} {event_id} for tenant {tenant.id}: {body['status']}")
    body.update({'type': event_type, 'event_id': event_id})
    return jsonify(body), status_code
