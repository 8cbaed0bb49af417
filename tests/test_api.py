"""
Tests for the JSON blueprints, error handlers and CLI commands
"""
from decimal import Decimal

from agrotrade.extensions import db
from agrotrade.models.stock import Stock, InventoryLot

from tests.helpers import lot_of


def _purchase_payload(supplier, product, quantity=10, unit_price='100'):
    return {
        'trade_type': 'PURCHASE',
        'trade_date': '2024-01-01',
        'partner_id': supplier.id,
        'lines': [{'product_id': product.id, 'quantity': quantity, 'unit_price': unit_price,
                   'sender': '张三'}],
    }


class TestTradeApi:
    """单据接口"""

    def test_create_and_fetch_document(self, client, warehouse, supplier, product):
        response = client.post('/trade/documents', json=_purchase_payload(supplier, product))

        assert response.status_code == 201
        data = response.get_json()['data']
        assert data['trade_no'].startswith('P-20240101-')
        assert data['lines'][0]['quantity'] == '10.00'
        assert Decimal(data['total_amount']) == Decimal('1000')

        fetched = client.get(f"/trade/documents/{data['id']}").get_json()
        assert fetched['data']['id'] == data['id']

        lots = client.get(f'/inventory/lots?product_id={product.id}').get_json()['data']
        assert [(lot['remaining_quantity'], lot['sender']) for lot in lots] == [('10.00', '张三')]

    def test_invalid_form_returns_field_errors(self, client, warehouse):
        response = client.post('/trade/documents', json={'trade_type': 'GIFT'})

        assert response.status_code == 400
        body = response.get_json()
        assert body['success'] is False
        assert body['error'] == 'ValidationError'
        assert 'trade_type' in body['errors']

    def test_unknown_document(self, client, warehouse):
        response = client.get('/trade/documents/999')
        assert response.status_code == 404
        assert response.get_json()['error'] == 'NotFound'

    def test_locked_line_returns_conflict(self, client, warehouse, supplier, customer, product):
        doc = client.post('/trade/documents', json=_purchase_payload(supplier, product)).get_json()['data']
        purchase_line = doc['lines'][0]['id']
        client.post('/trade/documents', json={
            'trade_type': 'SALE', 'trade_date': '2024-01-02', 'partner_id': customer.id,
            'lines': [{'product_id': product.id, 'quantity': 4, 'unit_price': '150'}],
        })

        response = client.delete(f'/trade/lines/{purchase_line}')

        assert response.status_code == 409
        body = response.get_json()
        assert body['error'] == 'LineLocked'
        assert body['lot_id'] == lot_of(purchase_line).id
        assert lot_of(purchase_line).remaining_quantity == Decimal('6')

    def test_update_and_add_line(self, client, warehouse, supplier, customer, product):
        client.post('/trade/documents', json=_purchase_payload(supplier, product))
        sale = client.post('/trade/documents', json={
            'trade_type': 'SALE', 'trade_date': '2024-01-02', 'partner_id': customer.id,
            'lines': [{'product_id': product.id, 'quantity': 4}],
        }).get_json()['data']

        response = client.patch(f"/trade/lines/{sale['lines'][0]['id']}", json={'quantity': '6'})
        assert response.status_code == 200
        assert response.get_json()['data']['matched_quantity'] == '6.00'

        response = client.post(f"/trade/documents/{sale['id']}/lines",
                               json={'product_id': product.id, 'quantity': '1', 'unit_price': '120'})
        assert response.status_code == 201
        assert Stock.query.filter_by(product_id=product.id).one().quantity == Decimal('3')

        response = client.delete(f"/trade/documents/{sale['id']}")
        assert response.get_json()['data']['status'] == 'CANCELLED'
        assert Stock.query.filter_by(product_id=product.id).one().quantity == Decimal('10')


class TestInventoryApi:
    """库存接口"""

    def test_transfer_and_position(self, client, warehouses, supplier, product):
        main, cold = warehouses
        doc = client.post('/trade/documents', json=_purchase_payload(supplier, product)).get_json()['data']
        lot_id = lot_of(doc['lines'][0]['id']).id

        response = client.post('/inventory/transfers', json={
            'lot_id': lot_id, 'quantity': '4', 'to_warehouse_id': cold.id, 'transfer_date': '2024-01-02'})
        assert response.status_code == 201
        assert len(response.get_json()['data']['records']) == 1

        position = client.get(f'/inventory/positions/{product.id}').get_json()['data']
        assert position['by_warehouse'] == {str(main.id): '6.00', str(cold.id): '4.00'}

    def test_adjustment_and_consistency(self, client, warehouse, supplier, product):
        client.post('/trade/documents', json=_purchase_payload(supplier, product))

        response = client.post('/inventory/adjustments', json={
            'product_id': product.id, 'new_quantity': '7', 'reason': '盘亏', 'adjusted_on': '2024-01-03'})
        assert response.status_code == 201
        assert response.get_json()['data']['delta'] == '-3.00'

        report = client.get('/inventory/consistency').get_json()
        assert report['success'] is True

    def test_manual_match_and_unmatch(self, client, warehouse, supplier, customer, product):
        # 先超卖，再采购，待匹配的销售手动指定批次
        sale = client.post('/trade/documents', json={
            'trade_type': 'SALE', 'trade_date': '2024-01-01', 'partner_id': customer.id,
            'lines': [{'product_id': product.id, 'quantity': 4}],
        }).get_json()['data']
        sale_line = sale['lines'][0]['id']
        doc = client.post('/trade/documents', json=_purchase_payload(supplier, product)).get_json()['data']
        lot_id = lot_of(doc['lines'][0]['id']).id

        response = client.post('/inventory/matching', json={'line_id': sale_line, 'lot_id': lot_id,
                                                            'quantity': '2'})
        assert response.status_code == 201
        match = response.get_json()['data']
        assert match['match_type'] == 'MANUAL'
        assert match['matched_quantity'] == '2.00'
        assert lot_of(doc['lines'][0]['id']).remaining_quantity == Decimal('8')

        response = client.post('/inventory/matching', json={'line_id': sale_line, 'lot_id': lot_id,
                                                            'quantity': '3'})
        assert response.status_code == 400

        response = client.delete(f"/inventory/matching/{match['id']}")
        assert response.status_code == 200
        assert response.get_json()['data']['matched_quantity'] == '0.00'
        assert lot_of(doc['lines'][0]['id']).remaining_quantity == Decimal('10')
        assert client.get('/inventory/consistency').get_json()['success'] is True

    def test_match_pending(self, client, warehouse, supplier, customer, product):
        client.post('/trade/documents', json={
            'trade_type': 'SALE', 'trade_date': '2024-01-01', 'partner_id': customer.id,
            'lines': [{'product_id': product.id, 'quantity': 4}],
        })
        client.post('/trade/documents', json=_purchase_payload(supplier, product))

        response = client.post('/inventory/matching/pending', json={'product_id': 'abc'})
        assert response.status_code == 400
        assert 'product_id' in response.get_json()['errors']

        response = client.post('/inventory/matching/pending', json={'product_id': product.id})
        assert response.status_code == 200
        assert response.get_json()['created'] == 1

        assert client.post('/inventory/matching/pending', json={}).get_json()['created'] == 0

    def test_cancel_lot_with_date(self, client, warehouse, supplier, product):
        doc = client.post('/trade/documents', json=_purchase_payload(supplier, product)).get_json()['data']
        lot_id = lot_of(doc['lines'][0]['id']).id

        response = client.post(f'/inventory/lots/{lot_id}/cancel',
                               json={'reason': '质检不合格', 'cancelled_on': '2024-01-03'})

        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['status'] == 'CANCELLED'
        assert data['cancelled_on'] == '2024-01-03'
        assert data['cancelled_quantity'] == '10.00'
        assert Stock.query.filter_by(product_id=product.id).one().quantity == Decimal('0')

    def test_production(self, client, warehouse, supplier, products):
        tomato, cucumber = products
        client.post('/trade/documents', json=_purchase_payload(supplier, tomato))

        response = client.post('/inventory/production', json={
            'additional_cost': '20', 'job_date': '2024-01-02', 'memo': '分拣',
            'inputs': [{'product_id': tomato.id, 'quantity': 4}],
            'outputs': [{'product_id': cucumber.id, 'quantity': 2}],
        })

        assert response.status_code == 201
        data = response.get_json()['data']
        assert data['output_unit_cost'] == '210.00'
        assert [lot['original_quantity'] for lot in data['output_lots']] == ['2.00']

    def test_production_requires_inputs(self, client, warehouse, products):
        response = client.post('/inventory/production', json={'outputs': [{'product_id': products[1].id,
                                                                           'quantity': 1}]})
        assert response.status_code == 400


class TestSettlementApi:
    """结算接口"""

    def test_close_and_summary(self, client, warehouse, supplier, customer, product):
        client.post('/trade/documents', json=_purchase_payload(supplier, product))
        client.post('/trade/documents', json={
            'trade_type': 'SALE', 'trade_date': '2024-01-02', 'partner_id': customer.id,
            'lines': [{'product_id': product.id, 'quantity': 8, 'unit_price': '150'}],
        })

        response = client.post('/settlement/close', json={'period_start': '2024-01-01',
                                                          'period_end': '2024-01-03'})
        assert response.status_code == 201
        body = response.get_json()
        assert body['data']['closing_inventory_value'] == '200.00'
        assert body['warnings'] == []

        response = client.post('/settlement/close', json={'period_start': '2024-01-05',
                                                          'period_end': '2024-01-06'})
        assert response.status_code == 409
        assert response.get_json()['error'] == 'PeriodSequenceViolation'

        summary = client.get('/settlement/summary?start=2024-01-01&end=2024-01-03').get_json()['data']
        assert Decimal(summary['revenue']) == Decimal('1200')
        assert Decimal(summary['gross_profit']) == Decimal('400')

    def test_summary_requires_dates(self, client, warehouse):
        assert client.get('/settlement/summary?start=2024-01-01').status_code == 400
        assert client.get('/settlement/summary?start=01/01/2024&end=2024-01-03').status_code == 400


class TestCommands:
    """CLI 命令"""

    def test_verify_ledger(self, app, product, purchase):
        purchase(product, 10, 100)
        runner = app.test_cli_runner()

        result = runner.invoke(args=['verify-ledger'])
        assert result.exit_code == 0

        stock = Stock.query.filter_by(product_id=product.id).one()
        stock.quantity = Decimal('5')
        db.session.commit()

        result = runner.invoke(args=['verify-ledger', '--product-id', str(product.id)])
        assert result.exit_code == 1
        assert f'产品 {product.id}' in result.output

    def test_status(self, app, product, purchase):
        purchase(product, 10, 100)
        result = app.test_cli_runner().invoke(args=['status'])
        assert result.exit_code == 0
        assert InventoryLot.query.count() == 1
        assert '批次' in result.output
