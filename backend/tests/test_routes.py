# Overview: HTTP-level coverage for the backoffice blueprints.

"""
Route tests

Each test drives the JSON API through the Flask test client and checks the
status codes and payload shapes callers depend on:
- caller identity (X-User-Id) is required on every business route
- validation problems map to 400, unknown records to 404,
  business-rule conflicts (stock floor, terminal documents) to 409
"""

import pytest

from backoffice.services import recalculation_service
from conftest import actor_headers


@pytest.fixture
def ids(make_material, make_warehouse):
    flour = make_material("Flour", purchase_unit="kg", consumption_unit="g", factor=1000)
    r1 = make_material("R1")
    r2 = make_material("R2")
    finished = make_material("F")
    a = make_warehouse("A")
    b = make_warehouse("B")
    return {
        "flour": flour.id, "r1": r1.id, "r2": r2.id, "finished": finished.id,
        "a": a.id, "b": b.id,
    }


def _purchase(client, material_id, warehouse_id, quantity, unit_cost, unit="consumption", day=1):
    return client.post('/api/inventory/purchase', headers=actor_headers(), json={
        'material_id': material_id,
        'warehouse_id': warehouse_id,
        'quantity': quantity,
        'unit_cost': unit_cost,
        'unit': unit,
        'occurred_at': f'2024-03-{day:02d}T12:00:00Z',
    })


class TestSystemRoutes:

    def test_health(self, client, db_session):
        response = client.get('/api/health')
        assert response.status_code == 200
        assert response.json['status'] == 'healthy'
        assert response.json['checks']['database']['details']['accounts'] == 0

    def test_actor_header_required(self, client, db_session):
        assert client.get('/api/transfers').status_code == 401
        assert client.get('/api/transfers', headers={'X-User-Id': 'abc'}).status_code == 401


class TestAccountRoutes:

    def test_debt_payment_statement(self, client, db_session):
        created = client.post('/api/current-accounts', headers=actor_headers(),
                              json={'code': 'SUP-1', 'name': 'Mill Supplies'})
        assert created.status_code == 201
        account_id = created.json['id']

        debt = client.post(f'/api/current-accounts/{account_id}/transactions', headers=actor_headers(), json={
            'kind': 'DEBT', 'amount': 500, 'occurred_at': '2024-03-02T12:00:00Z',
        })
        assert debt.status_code == 201
        assert debt.json['current_balance'] == '500.0000'

        payment = client.post(f'/api/current-accounts/{account_id}/payments', headers=actor_headers(), json={
            'amount': '200', 'payment_method': 'BANK', 'occurred_at': '2024-03-06T12:00:00Z',
        })
        assert payment.status_code == 201
        assert payment.json['current_balance'] == '300.0000'

        statement = client.get(
            f'/api/current-accounts/{account_id}/statement?startDate=2024-03-01&endDate=2024-03-11',
            headers=actor_headers(),
        )
        assert statement.status_code == 200
        summary = statement.json['summary']
        assert summary['opening_balance'] == '0.0000'
        assert summary['total_debit'] == '500.0000'
        assert summary['total_credit'] == '200.0000'
        assert summary['closing_balance'] == '300.0000'

        account = client.get(f'/api/current-accounts/{account_id}', headers=actor_headers())
        assert account.json['transaction_count'] == 2
        assert account.json['payment_count'] == 1

    def test_unknown_account_is_404(self, client, db_session):
        response = client.get('/api/current-accounts/99999', headers=actor_headers())
        assert response.status_code == 404

    def test_invalid_kind_is_400(self, client, db_session):
        created = client.post('/api/current-accounts', headers=actor_headers(), json={'code': 'C', 'name': 'C'})
        response = client.post(f"/api/current-accounts/{created.json['id']}/transactions", headers=actor_headers(),
                               json={'kind': 'REFUND', 'amount': 1})
        assert response.status_code == 400

    def test_unknown_field_is_400(self, client, db_session):
        response = client.post('/api/current-accounts', headers=actor_headers(),
                               json={'code': 'C', 'name': 'C', 'current_balance': 1000})
        assert response.status_code == 400

    def test_duplicate_code_is_409(self, client, db_session):
        client.post('/api/current-accounts', headers=actor_headers(), json={'code': 'DUP', 'name': 'One'})
        response = client.post('/api/current-accounts', headers=actor_headers(), json={'code': 'DUP', 'name': 'Two'})
        assert response.status_code == 409

    def test_recalculate_balances(self, client, db_session):
        client.post('/api/current-accounts', headers=actor_headers(),
                    json={'code': 'O', 'name': 'Opening', 'opening_balance': 42})
        response = client.post('/api/current-accounts/recalculate-balances', headers=actor_headers())
        assert response.status_code == 200
        assert response.json['updated_accounts'] == 1
        assert response.json['total_transactions_processed'] == 1
        assert response.json['failed_keys'] == []

    def test_recalculate_partial_failure_is_207(self, client, db_session, monkeypatch):
        client.post('/api/current-accounts', headers=actor_headers(), json={'code': 'X', 'name': 'X'})

        def broken(account_id):
            raise RuntimeError("lock timeout")

        monkeypatch.setattr(recalculation_service, "recalculate_account", broken)
        response = client.post('/api/current-accounts/recalculate-balances', headers=actor_headers())
        assert response.status_code == 207
        assert len(response.json['failed_keys']) == 1


class TestInventoryRoutes:

    def test_purchase_in_purchase_units(self, client, ids):
        response = _purchase(client, ids['flour'], ids['a'], 2, 50, unit='purchase')

        assert response.status_code == 201
        assert response.json['event']['kind'] == 'PURCHASE_IN'
        assert response.json['event']['quantity'] == '2000.0000'
        assert response.json['stock']['current_stock'] == '2000.0000'
        assert response.json['stock']['average_cost'] == '0.0500'

    def test_consumption_beyond_stock_is_409(self, client, ids):
        _purchase(client, ids['r1'], ids['a'], 5, 1)
        response = client.post('/api/inventory/consumption', headers=actor_headers(), json={
            'material_id': ids['r1'], 'warehouse_id': ids['a'], 'quantity': 6,
        })
        assert response.status_code == 409
        assert response.json['available'] == '5.0000'
        assert response.json['requested'] == '6.0000'

    def test_negative_quantity_is_400(self, client, ids):
        response = _purchase(client, ids['r1'], ids['a'], -1, 1)
        assert response.status_code == 400

    def test_unknown_material_is_404(self, client, ids):
        response = _purchase(client, 99999, ids['a'], 1, 1)
        assert response.status_code == 404

    def test_adjust_reserve_and_summary(self, client, ids):
        _purchase(client, ids['r1'], ids['a'], 10, 2)
        adjust = client.post('/api/inventory/adjust', headers=actor_headers(), json={
            'material_id': ids['r1'], 'warehouse_id': ids['a'], 'quantity_delta': -3,
        })
        assert adjust.status_code == 201
        assert adjust.json['event']['kind'] == 'ADJUSTMENT_OUT'

        reserve = client.post('/api/inventory/reserve', headers=actor_headers(), json={
            'material_id': ids['r1'], 'warehouse_id': ids['a'], 'reserved_stock': 2,
        })
        assert reserve.status_code == 200
        assert reserve.json['available_stock'] == '5.0000'

        summary = client.get(f"/api/inventory/stock/{ids['r1']}", headers=actor_headers())
        assert summary.status_code == 200
        assert summary.json['total_stock'] == '7.0000'

        as_of = client.get(f"/api/inventory/stock/{ids['r1']}?as_of=2024-03-01T12:00:00Z", headers=actor_headers())
        assert as_of.json['total_stock'] == '10.0000'

    def test_alerts_and_consistency(self, client, ids):
        client.post('/api/inventory/minimum', headers=actor_headers(), json={
            'material_id': ids['r2'], 'warehouse_id': ids['a'], 'minimum_stock': 4,
        })
        alerts = client.get('/api/inventory/alerts', headers=actor_headers())
        assert alerts.json['count'] == 1
        assert alerts.json['items'][0]['severity'] == 'critical'

        consistency = client.get('/api/inventory/consistency', headers=actor_headers())
        assert consistency.status_code == 200
        assert consistency.json['is_consistent'] is True


class TestTransferRoutes:

    def test_transfer_lifecycle(self, client, ids):
        _purchase(client, ids['r1'], ids['a'], 100, 6)

        rejected = client.post('/api/transfers', headers=actor_headers(), json={
            'from_warehouse_id': ids['a'], 'to_warehouse_id': ids['b'], 'material_id': ids['r1'], 'quantity': 101,
        })
        assert rejected.status_code == 409

        created = client.post('/api/transfers', headers=actor_headers(), json={
            'from_warehouse_id': ids['a'], 'to_warehouse_id': ids['b'], 'material_id': ids['r1'], 'quantity': 80,
            'request_date': '2024-03-05T09:00:00Z',
        })
        assert created.status_code == 201
        assert created.json['status'] == 'PENDING'
        transfer_id = created.json['id']

        completed = client.patch(f'/api/transfers/{transfer_id}', headers=actor_headers(7),
                                 json={'status': 'COMPLETED'})
        assert completed.status_code == 200
        assert completed.json['status'] == 'COMPLETED'
        assert completed.json['unit_cost'] == '6.0000'
        assert completed.json['completed_by_user_id'] == 7

        again = client.patch(f'/api/transfers/{transfer_id}', headers=actor_headers(), json={'status': 'CANCELLED'})
        assert again.status_code == 409

        listing = client.get(f"/api/transfers?warehouse_id={ids['b']}", headers=actor_headers())
        assert listing.json['count'] == 1

    def test_same_warehouse_is_400(self, client, ids):
        response = client.post('/api/transfers', headers=actor_headers(), json={
            'from_warehouse_id': ids['a'], 'to_warehouse_id': ids['a'], 'material_id': ids['r1'], 'quantity': 1,
        })
        assert response.status_code == 400

    def test_unknown_transfer_is_404(self, client, ids):
        assert client.get('/api/transfers/99999', headers=actor_headers()).status_code == 404


class TestProductionRoutes:

    def _create(self, client, ids):
        return client.post('/api/production/open', headers=actor_headers(), json={
            'produced_material_id': ids['finished'],
            'produced_quantity': 1,
            'production_warehouse_id': ids['b'],
            'consumption_warehouse_id': ids['a'],
            'production_date': '2024-03-03T12:00:00Z',
            'items': [
                {'material_id': ids['r1'], 'quantity': 10},
                {'material_id': ids['r2'], 'quantity': 4},
            ],
        })

    def test_production_lifecycle(self, client, ids):
        _purchase(client, ids['r1'], ids['a'], 50, 5)
        _purchase(client, ids['r2'], ids['a'], 10, 20)

        created = self._create(client, ids)
        assert created.status_code == 201
        assert created.json['total_cost'] == '130.0000'
        production_id = created.json['id']

        edited = client.put(f'/api/production/open/{production_id}', headers=actor_headers(),
                            json={'notes': 'double checked'})
        assert edited.status_code == 200
        assert edited.json['notes'] == 'double checked'

        completed = client.patch(f'/api/production/open/{production_id}', headers=actor_headers(),
                                 json={'status': 'COMPLETED'})
        assert completed.status_code == 200
        assert completed.json['status'] == 'COMPLETED'

        locked = client.put(f'/api/production/open/{production_id}', headers=actor_headers(), json={'notes': 'x'})
        assert locked.status_code == 409
        assert client.delete(f'/api/production/open/{production_id}', headers=actor_headers()).status_code == 409

        events = client.get(f"/api/inventory/stock/{ids['finished']}/events", headers=actor_headers())
        assert [ev['kind'] for ev in events.json['items']] == ['PRODUCTION_IN']
        assert events.json['items'][0]['unit_cost'] == '130.0000'

    def test_shortage_is_409(self, client, ids):
        response = self._create(client, ids)
        assert response.status_code == 409

    def test_delete_pending(self, client, ids):
        _purchase(client, ids['r1'], ids['a'], 50, 5)
        _purchase(client, ids['r2'], ids['a'], 10, 20)
        production_id = self._create(client, ids).json['id']

        assert client.delete(f'/api/production/open/{production_id}', headers=actor_headers()).status_code == 200
        assert client.get(f'/api/production/open/{production_id}', headers=actor_headers()).status_code == 404

    def test_list(self, client, ids):
        response = client.get('/api/production/open?status=PENDING', headers=actor_headers())
        assert response.status_code == 200
        assert response.json['count'] == 0


class TestReportRoutes:

    def test_stock_extract(self, client, ids):
        _purchase(client, ids['r1'], ids['a'], 10, 3, day=2)
        _purchase(client, ids['r1'], ids['a'], 5, 3, day=6)

        response = client.get(
            f"/api/reports/stock-extract?startDate=2024-03-05&endDate=2024-03-10&reportType=amount"
            f"&warehouseIds={ids['a']}",
            headers=actor_headers(),
        )
        assert response.status_code == 200
        record = response.json['records'][0]
        assert record['opening'] == '30.0000'
        assert record['purchase_in'] == '15.0000'
        assert record['closing'] == '45.0000'
        assert response.json['tree'][0]['warehouse_id'] == ids['a']

    def test_dates_required(self, client, ids):
        response = client.get('/api/reports/stock-extract', headers=actor_headers())
        assert response.status_code == 400

    def test_bad_ids_are_400(self, client, ids):
        response = client.get(
            '/api/reports/stock-extract?start_date=2024-03-01&end_date=2024-03-02&warehouse_ids=a,b',
            headers=actor_headers(),
        )
        assert response.status_code == 400


class TestCountAndRecipeRoutes:

    def test_stock_count(self, client, ids):
        _purchase(client, ids['r1'], ids['a'], 10, 2)
        _purchase(client, ids['r2'], ids['a'], 10, 3)

        response = client.post('/api/inventory/count', headers=actor_headers(), json={
            'warehouse_id': ids['a'],
            'occurred_at': '2024-03-02T12:00:00Z',
            'counts': [
                {'material_id': ids['r1'], 'counted_stock': 8},
                {'material_id': ids['r2'], 'counted_stock': 10},
            ],
        })

        assert response.status_code == 201
        assert response.json['adjustments_count'] == 1
        assert response.json['lines'][0]['difference'] == '-2.0000'
        assert response.json['lines'][1]['event_id'] is None

        summary = client.get(f"/api/inventory/stock/{ids['r1']}", headers=actor_headers())
        assert summary.json['total_stock'] == '8.0000'

    def test_stock_count_requires_counts(self, client, ids):
        response = client.post('/api/inventory/count', headers=actor_headers(), json={'warehouse_id': ids['a']})
        assert response.status_code == 400

    def test_stock_count_unknown_warehouse_is_404(self, client, ids):
        response = client.post('/api/inventory/count', headers=actor_headers(), json={
            'warehouse_id': 99999, 'counts': [{'material_id': ids['r1'], 'counted_stock': 1}],
        })
        assert response.status_code == 404

    def test_recipe_cost(self, client, ids):
        _purchase(client, ids['flour'], ids['a'], 2, 50, unit='purchase')

        response = client.post('/api/inventory/recipe-cost', headers=actor_headers(), json={
            'ingredients': [{'material_id': ids['flour'], 'quantity': 300}],
            'servings': 3,
        })

        assert response.status_code == 200
        assert response.json['total_cost'] == '7.5000'
        assert response.json['total_cost_with_tax'] == '9.0000'
        assert response.json['cost_per_serving'] == '2.5000'

    def test_recipe_cost_without_ingredients_is_400(self, client, ids):
        response = client.post('/api/inventory/recipe-cost', headers=actor_headers(), json={'servings': 2})
        assert response.status_code == 400
