def _company(http, **fields):
    response = http.post('/api/companies', json=dict({'name': 'Atelier Dupont'}, **fields))
    assert response.status_code == 201
    return response.get_json()


def _client(http, company_id, name='Acme SARL'):
    response = http.post(f'/api/companies/{company_id}/clients', json={'name': name})
    assert response.status_code == 201
    return response.get_json()


ITEMS = [
    {'description': 'Design work', 'quantity': 2, 'unit_price': '100.00', 'tax_rate': 20},
    {'description': 'Hosting', 'quantity': 1, 'unit_price': '50.00', 'tax_rate': 10},
]


def test_company_endpoints(http):
    company = _company(http)
    assert company['invoice_prefix'] == 'INV-'

    response = http.put(f"/api/companies/{company['id']}", json={'currency': 'CHF'})
    assert response.get_json()['currency'] == 'CHF'

    rates = http.get(f"/api/companies/{company['id']}/tax-rates").get_json()
    assert len(rates) == 3 and rates[0]['is_default']


def test_validation_error_shape(http):
    response = http.post('/api/companies', json={})
    assert response.status_code == 400
    assert response.get_json() == {'error': 'name is required'}


def test_not_found_shape(http):
    assert http.get('/api/invoices/99').status_code == 404
    assert http.get('/api/invoices/99').get_json()['error'] == 'Invoice 99 not found'
    assert http.get('/api/nowhere').get_json() == {'error': 'Not Found'}


def test_invoice_lifecycle(http):
    company = _company(http)
    client = _client(http, company['id'])

    response = http.post(f"/api/companies/{company['id']}/invoices", json={
        'client_id': client['id'], 'date': '2024-03-01', 'items': ITEMS,
    })
    assert response.status_code == 201
    invoice = response.get_json()
    assert invoice['invoice_number'] == 'INV-1000'
    assert (invoice['subtotal'], invoice['tax_amount'], invoice['total']) == ('250.00', '45.00', '295.00')

    for amount in ('120', '100'):
        response = http.post(f"/api/invoices/{invoice['id']}/payments", json={'amount': amount})
        assert response.status_code == 201

    body = response.get_json()
    assert body['payment']['amount'] == '100.00'
    assert body['invoice']['balance'] == '75.00'
    assert body['invoice']['status'] == 'unpaid'

    response = http.post(f"/api/invoices/{invoice['id']}/payments", json={'amount': '80'})
    assert response.status_code == 400

    response = http.post(f"/api/invoices/{invoice['id']}/payments", json={'amount': '75', 'method': 'card'})
    assert response.get_json()['invoice']['status'] == 'paid'

    payments = http.get(f"/api/invoices/{invoice['id']}/payments").get_json()
    assert [p['amount'] for p in payments] == ['120.00', '100.00', '75.00']


def test_update_invoice_items(http):
    company = _company(http)
    client = _client(http, company['id'])
    invoice = http.post(f"/api/companies/{company['id']}/invoices",
                        json={'client_id': client['id'], 'items': ITEMS}).get_json()

    response = http.put(f"/api/invoices/{invoice['id']}", json={'notes': 'Updated'})
    assert response.get_json()['notes'] == 'Updated'
    assert len(response.get_json()['items']) == 2

    response = http.put(f"/api/invoices/{invoice['id']}", json={'items': ITEMS[:1]})
    assert response.get_json()['total'] == '240.00'

    response = http.put(f"/api/invoices/{invoice['id']}", json={'total': '1.00'})
    assert response.status_code == 400


def test_quote_conversion(http):
    company = _company(http)
    client = _client(http, company['id'])
    quote = http.post(f"/api/companies/{company['id']}/quotes", json={
        'client_id': client['id'], 'date': '2024-05-10', 'items': ITEMS,
    }).get_json()
    assert quote['quote_number'] == 'QUO-0001'

    response = http.post(f"/api/quotes/{quote['id']}/convert")
    assert response.status_code == 201
    invoice = response.get_json()
    assert invoice['quote_id'] == quote['id']
    assert invoice['due_date'] == '2024-06-09'
    assert invoice['status'] == 'draft'

    assert http.get(f"/api/quotes/{quote['id']}").get_json()['status'] == 'accepted'
    assert http.post(f"/api/quotes/{quote['id']}/convert").status_code == 400

    listed = http.get(f"/api/companies/{company['id']}/quotes?status=accepted").get_json()
    assert [q['id'] for q in listed] == [quote['id']]


def test_next_number_preview(http):
    company = _company(http)
    response = http.get(f"/api/companies/{company['id']}/next-number?type=quote")
    assert response.get_json() == {'type': 'quote', 'next_number': 1, 'formatted': 'QUO-0001'}

    assert http.get(f"/api/companies/{company['id']}/next-number?type=receipt").status_code == 400


def test_pdf_download(http):
    company = _company(http)
    client = _client(http, company['id'])
    invoice = http.post(f"/api/companies/{company['id']}/invoices",
                        json={'client_id': client['id'], 'items': ITEMS}).get_json()

    response = http.get(f"/api/invoices/{invoice['id']}/pdf")
    assert response.status_code == 200
    assert response.mimetype == 'application/pdf'
    assert response.data.startswith(b'%PDF')
    assert 'INV-1000.pdf' in response.headers['Content-Disposition']


def test_client_and_product_endpoints(http):
    company = _company(http)
    client = _client(http, company['id'])

    response = http.post(f"/api/companies/{company['id']}/products",
                         json={'name': 'Support', 'unit_price': '80', 'tax_rate': 20})
    product = response.get_json()
    assert response.status_code == 201 and product['unit_price'] == '80.00'

    assert http.delete(f"/api/products/{product['id']}").status_code == 200
    assert http.get(f"/api/companies/{company['id']}/products").get_json() == []

    assert http.delete(f"/api/clients/{client['id']}").status_code == 200
    assert http.get(f"/api/clients/{client['id']}").status_code == 404


def test_dashboard_endpoint(http):
    company = _company(http)
    dashboard = http.get(f"/api/companies/{company['id']}/dashboard").get_json()

    assert dashboard['total_revenue'] == '0.00'
    assert len(dashboard['revenue_by_month']) == 6
