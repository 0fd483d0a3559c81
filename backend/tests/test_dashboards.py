import pytest


@pytest.fixture
def order(store, user):
    row = store.insert("orders", {"user_id": user["id"], "order_number": "CMD-20250312-00001", "status": "pending",
                                  "total_amount": 20, "currency": "EUR"})
    store.insert("order_items", {"order_id": row["id"], "item_name": "Pizza", "quantity": 2, "unit_price": 10,
                                 "subtotal": 20})
    return row


def test_orders_are_listed_with_items(client, order, auth_headers, other_headers):
    [listed] = client.get("/api/orders", headers=auth_headers).json()["orders"]
    assert listed["order_number"] == "CMD-20250312-00001"
    assert [i["item_name"] for i in listed["items"]] == ["Pizza"]
    assert client.get("/api/orders?status=delivered", headers=auth_headers).json() == {"orders": []}
    assert client.get("/api/orders", headers=other_headers).json() == {"orders": []}


def test_order_status_update_is_owner_scoped(client, store, user, order, auth_headers, other_headers):
    assert client.patch(f"/api/orders/{order['id']}", json={"status": "ready"}, headers=other_headers).status_code == 404
    response = client.patch(f"/api/orders/{order['id']}", json={"status": "ready"}, headers=auth_headers)
    assert response.json()["order"]["status"] == "ready"
    bad = client.patch(f"/api/orders/{order['id']}", json={"status": "lost"}, headers=auth_headers)
    assert bad.status_code == 400
    assert client.get(f"/api/orders/{order['id']}", headers=other_headers).json() == {"error": "Commande introuvable"}


def test_ticket_lifecycle(client, store, auth_headers, other_headers):
    created = client.post("/api/tickets", json={"subject": "Box HS", "priority": "urgent"}, headers=auth_headers)
    assert created.status_code == 201
    ticket = created.json()["ticket"]
    assert ticket["case_number"].startswith("SAV-")
    assert ticket["status"] == "open"

    tid = ticket["id"]
    assert client.patch(f"/api/tickets/{tid}", json={"status": "closed"}, headers=other_headers).status_code == 404
    assert client.patch(f"/api/tickets/{tid}", json={"status": "waiting"},
                        headers=auth_headers).json()["ticket"]["status"] == "waiting"
    comment = client.post(f"/api/tickets/{tid}/comments", json={"content": "Piece commandee", "is_internal": True},
                          headers=auth_headers)
    assert comment.status_code == 201
    assert client.get(f"/api/tickets/{tid}/comments", headers=other_headers).status_code == 404
    [listed] = client.get(f"/api/tickets/{tid}/comments", headers=auth_headers).json()["comments"]
    assert listed["is_internal"] is True

    assert client.get("/api/tickets?priority=urgent", headers=auth_headers).json()["tickets"][0]["id"] == tid
    assert client.delete(f"/api/tickets/{tid}", headers=auth_headers).json() == {"success": True}
    assert store.select("ticket_comments") == []


def test_ticket_contact_must_be_owned(client, store, auth_headers):
    foreign = store.insert("contacts", {"user_id": "someone-else", "first_name": "X"})
    response = client.post("/api/tickets", json={"subject": "x", "contact_id": foreign["id"]}, headers=auth_headers)
    assert response.status_code == 404
    assert response.json() == {"error": "Contact introuvable"}


def test_leads_filters_and_pagination(client, store, user, auth_headers, other_headers):
    for i, status in enumerate(["interested", "callback", "interested"]):
        store.insert("leads", {"user_id": user["id"], "status": status, "interest_level": i + 3,
                               "contact_name": f"Prospect {i}", "created_at": f"2025-03-1{i}T10:00:00+00:00"})
    body = client.get("/api/leads?status=interested", headers=auth_headers).json()
    assert body["total"] == 2
    assert [lead["contact_name"] for lead in body["leads"]] == ["Prospect 2", "Prospect 0"]
    assert client.get("/api/leads?interest=4", headers=auth_headers).json()["total"] == 2
    assert client.get("/api/leads?search=prospect 1", headers=auth_headers).json()["total"] == 1
    page = client.get("/api/leads?page=2&page_size=2", headers=auth_headers).json()
    assert [lead["contact_name"] for lead in page["leads"]] == ["Prospect 0"]
    assert client.get("/api/leads", headers=other_headers).json()["total"] == 0


def test_lead_update_is_owner_scoped(client, store, user, auth_headers, other_headers):
    lead = store.insert("leads", {"user_id": user["id"], "status": "pending"})
    assert client.patch(f"/api/leads/{lead['id']}", json={"status": "converted"},
                        headers=other_headers).json() == {"error": "Lead introuvable"}
    response = client.patch(f"/api/leads/{lead['id']}", json={"status": "converted", "interest_level": 5},
                            headers=auth_headers)
    assert response.json()["lead"]["status"] == "converted"
    assert client.patch(f"/api/leads/{lead['id']}", json={"interest_level": 9},
                        headers=auth_headers).status_code == 400


def test_notification_templates_crud(client, auth_headers, other_headers):
    missing_subject = client.post("/api/notification-templates", json={"name": "Suivi", "content": "Bonjour"},
                                  headers=auth_headers)
    assert missing_subject.status_code == 400
    created = client.post("/api/notification-templates", headers=auth_headers, json={
        "name": "Suivi", "type": "sms", "content": "Bonjour {{client_name}}",
    })
    assert created.status_code == 201
    tid = created.json()["template"]["id"]
    assert [t["id"] for t in client.get("/api/notification-templates?type=sms", headers=auth_headers).json()["templates"]] == [tid]
    assert client.get("/api/notification-templates?type=email", headers=auth_headers).json() == {"templates": []}
    assert client.patch(f"/api/notification-templates/{tid}", json={"content": "x"},
                        headers=other_headers).status_code == 404
    assert client.patch(f"/api/notification-templates/{tid}", json={"content": "Salut"},
                        headers=auth_headers).json()["template"]["content"] == "Salut"
    assert client.delete(f"/api/notification-templates/{tid}", headers=auth_headers).json() == {"success": True}
