"""
Tests for the loyalty admin API (offers, rewards, progress, audit).
"""
import pytest

from punchcard.extensions import db
from punchcard.models.offer import Offer
from punchcard.models.reward import Reward, RewardStatus


@pytest.fixture
def headers(tenant):
    return {'X-Tenant-ID': str(tenant.id), 'X-Staff-Email': 'owner@example.com'}


class TestTenantAuth:
    """Every admin endpoint requires a known, active tenant."""

    def test_missing_tenant_header(self, client):
        response = client.get('/api/loyalty/offers')

        assert response.status_code == 401
        assert response.json['error']['code'] == 'AUTH_REQUIRED'

    def test_unknown_tenant(self, client, tenant):
        response = client.get('/api/loyalty/offers', headers={'X-Tenant-ID': '999'})

        assert response.status_code == 404
        assert response.json['error']['code'] == 'TENANT_NOT_FOUND'

    def test_inactive_tenant(self, client, tenant, headers):
        tenant.is_active = False
        db.session.commit()

        response = client.get('/api/loyalty/offers', headers=headers)

        assert response.status_code == 403
        assert response.json['error']['code'] == 'TENANT_INACTIVE'


class TestOffersApi:
    """Offer administration endpoints."""

    def test_create_offer(self, client, headers):
        response = client.post('/api/loyalty/offers', headers=headers, json={
            'brand_name': 'Orijen',
            'size_group': '13lb',
            'required_quantity': 8,
        })

        assert response.status_code == 201
        offer = response.json['offer']
        assert offer['name'] == 'Orijen 13lb'
        assert offer['required_quantity'] == 8
        assert offer['window_months'] == 12

    def test_create_offer_missing_field(self, client, headers):
        response = client.post('/api/loyalty/offers', headers=headers, json={'brand_name': 'Orijen'})

        assert response.status_code == 400
        assert 'size_group' in response.json['error']['message']

    def test_create_offer_invalid_quantity(self, client, headers):
        response = client.post('/api/loyalty/offers', headers=headers, json={
            'brand_name': 'Orijen',
            'size_group': '13lb',
            'required_quantity': 0,
        })

        assert response.status_code == 400
        assert response.json['error']['code'] == 'INVALID_REQUIRED_QUANTITY'

    def test_duplicate_offer_conflicts(self, client, headers, offer):
        response = client.post('/api/loyalty/offers', headers=headers, json={
            'brand_name': 'Acana',
            'size_group': '25lb',
            'required_quantity': 10,
        })

        assert response.status_code == 409
        assert response.json['error']['conflicts'] == [{'offer_id': offer.id}]

    def test_list_offers(self, client, headers, offer):
        response = client.get('/api/loyalty/offers', headers=headers)

        assert response.status_code == 200
        assert response.json['count'] == 1
        assert response.json['offers'][0]['id'] == offer.id

    def test_list_offers_scoped_to_tenant(self, client, other_tenant, offer):
        response = client.get('/api/loyalty/offers', headers={'X-Tenant-ID': str(other_tenant.id)})

        assert response.json['count'] == 0

    def test_get_offer_with_variations(self, client, headers, offer):
        response = client.get(f'/api/loyalty/offers/{offer.id}', headers=headers)

        assert response.status_code == 200
        variation_ids = sorted(v['variation_id'] for v in response.json['offer']['variations'])
        assert variation_ids == ['VAR_A', 'VAR_B', 'VAR_C']

    def test_get_missing_offer(self, client, headers):
        response = client.get('/api/loyalty/offers/4242', headers=headers)

        assert response.status_code == 404
        assert response.json['error']['code'] == 'OFFER_NOT_FOUND'

    def test_update_offer(self, client, headers, offer):
        response = client.patch(f'/api/loyalty/offers/{offer.id}', headers=headers, json={
            'description': 'Any 25lb Acana bag'
        })

        assert response.status_code == 200
        assert response.json['offer']['description'] == 'Any 25lb Acana bag'

    def test_deactivate_offer(self, client, headers, offer):
        response = client.post(f'/api/loyalty/offers/{offer.id}/deactivate', headers=headers)

        assert response.status_code == 200
        assert response.json['offer']['is_active'] is False
        assert db.session.get(Offer, offer.id).is_active is False

    def test_add_variations(self, client, headers, offer):
        response = client.post(f'/api/loyalty/offers/{offer.id}/variations', headers=headers, json={
            'variations': [{'variation_id': 'VAR_D', 'item_name': 'Acana Heritage'}]
        })

        assert response.status_code == 201
        assert response.json['count'] == 1

    def test_variation_conflict(self, client, headers, offer):
        """A variation can only belong to one active offer."""
        created = client.post('/api/loyalty/offers', headers=headers, json={
            'brand_name': 'Acana',
            'size_group': '13lb',
            'required_quantity': 10,
        })
        other_id = created.json['offer']['id']

        response = client.post(f'/api/loyalty/offers/{other_id}/variations', headers=headers, json={
            'variations': [{'variation_id': 'VAR_A'}, {'variation_id': 'VAR_NEW'}]
        })

        assert response.status_code == 409
        conflicts = response.json['error']['conflicts']
        assert conflicts == [{'variation_id': 'VAR_A', 'offer_id': offer.id, 'offer_name': offer.name}]

    def test_add_variations_requires_list(self, client, headers, offer):
        response = client.post(f'/api/loyalty/offers/{offer.id}/variations', headers=headers, json={})

        assert response.status_code == 400

    def test_remove_variation(self, client, headers, offer):
        response = client.delete(f'/api/loyalty/offers/{offer.id}/variations/VAR_C', headers=headers)

        assert response.status_code == 200
        assert response.json['variation']['is_active'] is False


class TestRewardsApi:
    """Reward listing, redemption, progress and audit endpoints."""

    def test_list_rewards(self, client, headers, offer, purchase):
        purchase(14)

        response = client.get('/api/loyalty/rewards?status=earned', headers=headers)

        assert response.status_code == 200
        assert response.json['count'] == 1
        assert response.json['rewards'][0]['status'] == RewardStatus.EARNED.value

    def test_redeem_reward(self, client, headers, offer, purchase):
        result = purchase(12)
        reward_id = result.reward_progress.earned_reward_ids[0]

        response = client.post(f'/api/loyalty/rewards/{reward_id}/redeem', headers=headers, json={
            'notes': 'Given at counter'
        })

        assert response.status_code == 200
        assert response.json['success'] is True
        assert response.json['reward']['status'] == RewardStatus.REDEEMED.value
        assert response.json['redemption']['redeemed_by'] == 'owner@example.com'

    def test_redeem_twice_conflicts(self, client, headers, offer, purchase):
        result = purchase(12)
        reward_id = result.reward_progress.earned_reward_ids[0]

        client.post(f'/api/loyalty/rewards/{reward_id}/redeem', headers=headers, json={})
        response = client.post(f'/api/loyalty/rewards/{reward_id}/redeem', headers=headers, json={})

        assert response.status_code == 409
        assert response.json['error']['code'] == 'INVALID_STATUS_TRANSITION'

    def test_redeem_in_progress_conflicts(self, client, headers, offer, purchase):
        result = purchase(4)

        response = client.post(
            f'/api/loyalty/rewards/{result.reward_progress.reward_id}/redeem', headers=headers, json={}
        )

        assert response.status_code == 409

    def test_redeem_missing_reward(self, client, headers, offer):
        response = client.post('/api/loyalty/rewards/777/redeem', headers=headers, json={})

        assert response.status_code == 404
        assert response.json['error']['code'] == 'REWARD_NOT_FOUND'

    def test_redeem_wrong_customer(self, client, headers, offer, purchase):
        result = purchase(12)
        reward_id = result.reward_progress.earned_reward_ids[0]

        response = client.post(f'/api/loyalty/rewards/{reward_id}/redeem', headers=headers, json={
            'customer_id': 'CUST_OTHER'
        })

        assert response.status_code == 409
        assert db.session.get(Reward, reward_id).status == RewardStatus.EARNED.value

    def test_customer_progress(self, client, headers, offer, purchase):
        purchase(15)

        response = client.get('/api/loyalty/customers/CUST1/progress', headers=headers)

        assert response.status_code == 200
        assert response.json['customer_id'] == 'CUST1'
        assert len(response.json['offers']) == 1
        assert response.json['offers'][0]['current_quantity'] == 3
        assert len(response.json['earned_rewards']) == 1

    def test_audit_trail(self, client, headers, offer, purchase):
        purchase(12)

        response = client.get('/api/loyalty/audit?action=REWARD_EARNED', headers=headers)

        assert response.status_code == 200
        assert response.json['count'] == 1
        assert response.json['entries'][0]['action'] == 'REWARD_EARNED'


class TestHealth:

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.json['status'] == 'healthy'
        assert response.json['scheduler_running'] is False
