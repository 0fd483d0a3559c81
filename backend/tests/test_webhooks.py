import pytest


@pytest.fixture
def configs(store, user, agent):
    rows = {}
    for table, secret in (("agent_rdv_config", "rdv-key"), ("agent_order_config", "order-key"),
                          ("agent_support_config", "support-key"), ("agent_commercial_config", "sales-key")):
        rows[table] = store.insert(table, {"user_id": user["id"], "agent_id": agent["id"], "webhook_secret": secret})
    return rows


def test_malformed_json_is_rejected(client, configs):
    response = client.post("/api/webhooks/appointments", content=b"{action: oops",
                           headers={"x-webhook-secret": "rdv-key", "content-type": "application/json"})
    assert response.status_code == 400
    assert response.json() == {"error": "Corps de requete invalide"}


def test_non_object_body_is_rejected(client, configs):
    response = client.post("/api/webhooks/orders", json=["save_order"], headers={"x-webhook-secret": "order-key"})
    assert response.status_code == 400
    assert response.json() == {"error": "Corps de requete invalide"}


@pytest.mark.parametrize("family,secret", [
    ("appointments", "rdv-key"),
    ("orders", "order-key"),
    ("support", "support-key"),
    ("commercial", "sales-key"),
])
def test_each_family_answers_with_its_own_secret(client, configs, family, secret):
    response = client.post(f"/api/webhooks/{family}", json={"action": "dance"}, headers={"x-webhook-secret": secret})
    assert response.status_code == 200
    assert response.json() == {"result": "Action inconnue: dance"}


def test_secret_of_another_family_is_refused(client, configs):
    response = client.post("/api/webhooks/support", json={"action": "dance"}, headers={"x-webhook-secret": "order-key"})
    assert response.status_code == 401
    assert response.json() == {"error": "Invalid webhook secret"}


def test_missing_secret_is_refused(client, configs):
    response = client.post("/api/webhooks/commercial", json={"action": "dance"})
    assert response.status_code == 401
    assert response.json() == {"error": "Missing webhook secret"}


def test_order_webhook_saves_order(client, store, user, configs):
    response = client.post("/api/webhooks/orders", headers={"x-webhook-secret": "order-key"}, json={
        "action": "save_order",
        "client_name": "Lea Martin",
        "client_phone": "+33611111111",
        "items": [{"name": "Pizza", "quantity": 2, "unit_price": 9.5}],
    })
    assert response.status_code == 200
    assert response.json()["result"].startswith("Commande enregistree avec succes.")
    [order] = store.select("orders", [("eq", "user_id", user["id"])])
    assert order["total_amount"] == 19.0
