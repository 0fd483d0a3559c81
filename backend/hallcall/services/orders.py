"""Order taking for the voice agent webhook: caller lookup, order capture and invoices."""
import logging
import secrets
from datetime import datetime
from html import escape
from typing import Any, Dict, List, Optional

from .contacts import (
    describe_contact,
    describe_matches,
    find_or_create_contact,
    register_contact,
    search_contacts,
    strip_spaces,
)
from .email_client import email_layout, send_user_email
from .scheduling import business_now, transfer_call
from .telephony import send_and_log_sms

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "confirmed", "preparing", "ready", "delivered", "cancelled")
RECENT_ORDERS_SHOWN = 3


def reference_number(prefix: str, now: Optional[datetime] = None) -> str:
    """PREFIX-YYYYMMDD-NNNNN, dated in business time."""
    now = now or business_now()
    return f"{prefix}-{now:%Y%m%d}-{secrets.randbelow(100000):05d}"


def money(amount: Any, currency: str) -> str:
    return f"{float(amount or 0):.2f} {currency}"


def _day(value: Optional[str]) -> str:
    return str(value or "")[:10]


def search_client(db, config: Dict[str, Any], query: str) -> str:
    if not (query or "").strip():
        return "Veuillez fournir un numero de telephone, une adresse email ou un nom pour rechercher le client."
    matches = search_contacts(db, config["user_id"], query)
    if not matches:
        return ("Aucun client trouve avec ces informations. Propose au client de l'enregistrer "
                "en collectant son prenom, nom et telephone.")
    if len(matches) > 1:
        return describe_matches(matches)

    contact = matches[0]
    answer = describe_contact(contact)
    orders = db.select("orders", [("eq", "user_id", config["user_id"]), ("eq", "contact_id", contact["id"])],
                       order="created_at", desc=True, limit=RECENT_ORDERS_SHOWN)
    if orders:
        answer += "\nCommandes recentes:\n" + "\n".join(
            f"- {o['order_number']}: {money(o.get('total_amount'), o.get('currency') or 'EUR')} "
            f"({o.get('status')}), le {_day(o.get('created_at'))}"
            for o in orders
        )
    return answer


def _parse_items(raw: Any) -> List[Dict[str, Any]]:
    """Validated order lines; raises ValueError with the answer for the caller."""
    if not isinstance(raw, list) or not raw:
        raise ValueError("Erreur: la commande doit contenir au moins un article.")
    lines = []
    for item in raw:
        item = item if isinstance(item, dict) else {}
        name = str(item.get("name") or "").strip()
        try:
            quantity = int(item.get("quantity") or 0)
        except (TypeError, ValueError):
            quantity = 0
        if not name or quantity <= 0:
            raise ValueError("Erreur: article invalide. Chaque article doit avoir un nom et une quantite positive.")
        try:
            unit_price = float(item.get("unit_price") or 0)
        except (TypeError, ValueError):
            unit_price = -1
        if unit_price < 0:
            raise ValueError(f"Erreur: prix invalide pour {name}.")
        lines.append({
            "item_name": name,
            "quantity": quantity,
            "unit_price": unit_price,
            "subtotal": round(quantity * unit_price, 2),
        })
    return lines


async def save_order(db, config: Dict[str, Any], params: Dict[str, Any], now: Optional[datetime] = None) -> str:
    client_name = (params.get("client_name") or "").strip()
    phone = strip_spaces(params.get("client_phone"))
    email = (params.get("client_email") or "").strip() or None
    if not client_name or not phone:
        return "Informations manquantes. Il faut au minimum: nom du client et numero de telephone."
    try:
        lines = _parse_items(params.get("items"))
    except ValueError as e:
        return str(e)

    user_id = config["user_id"]
    currency = config.get("currency") or "EUR"
    subtotal = round(sum(line["subtotal"] for line in lines), 2)
    tax = round(subtotal * float(config.get("tax_rate") or 0), 2)
    total = round(subtotal + tax, 2)
    order_number = reference_number("CMD", now)

    contact_id = find_or_create_contact(db, user_id, client_name, phone, email)
    try:
        order = db.insert("orders", {
            "user_id": user_id,
            "agent_id": config.get("agent_id"),
            "contact_id": contact_id,
            "order_number": order_number,
            "client_name": client_name,
            "client_phone": phone,
            "client_email": email,
            "notes": params.get("notes") or None,
            "subtotal_amount": subtotal,
            "tax_amount": tax,
            "total_amount": total,
            "currency": currency,
            "status": "pending",
        })
    except Exception as e:
        logger.error(f"Order insert failed for {user_id}: {e}")
        return "Erreur lors de la sauvegarde de la commande. Veuillez reessayer."
    for line in lines:
        db.insert("order_items", dict(line, order_id=order["id"]))
    logger.info(f"Order {order_number} saved for user {user_id}: {money(total, currency)}")

    answer = (f"Commande enregistree avec succes.\nNumero de commande: {order_number}\n"
              f"Sous-total: {money(subtotal, currency)}")
    if tax > 0:
        answer += f"\nTVA: {money(tax, currency)}"
    answer += f"\nTotal: {money(total, currency)}\nCommunique le numero de commande {order_number} au client."
    return answer


def _load_order(db, user_id: str, order_number: str):
    order = db.select_one("orders", [("eq", "user_id", user_id), ("eq", "order_number", order_number)])
    if not order:
        return None, []
    return order, db.select("order_items", [("eq", "order_id", order["id"])], order="created_at")


def invoice_sms(order: Dict[str, Any], items: List[Dict[str, Any]]) -> str:
    currency = order.get("currency") or "EUR"
    content = f"Votre commande {order['order_number']}:\n"
    content += "".join(f"{i['quantity']}x {i['item_name']} - {money(i['subtotal'], currency)}\n" for i in items)
    content += "---\n"
    if float(order.get("tax_amount") or 0) > 0:
        content += f"Sous-total: {money(order.get('subtotal_amount'), currency)}\n"
        content += f"TVA: {money(order.get('tax_amount'), currency)}\n"
    content += f"TOTAL: {money(order.get('total_amount'), currency)}\nMerci pour votre commande !"
    return content


def invoice_html(order: Dict[str, Any], items: List[Dict[str, Any]]) -> str:
    currency = order.get("currency") or "EUR"
    cell = "padding: 8px 16px; border-bottom: 1px solid #e2e8f0;"
    rows = "".join(
        f'<tr><td style="{cell}">{escape(str(i["item_name"]))}</td>'
        f'<td style="{cell} text-align: center;">{i["quantity"]}</td>'
        f'<td style="{cell} text-align: right;">{money(i["unit_price"], currency)}</td>'
        f'<td style="{cell} text-align: right;">{money(i["subtotal"], currency)}</td></tr>'
        for i in items
    )
    totals = [("Sous-total", order.get("subtotal_amount"))]
    if float(order.get("tax_amount") or 0) > 0:
        totals.append(("TVA", order.get("tax_amount")))
    totals.append(("Total", order.get("total_amount")))
    rows += "".join(
        f'<tr><td colspan="3" style="{cell} text-align: right; font-weight: 600;">{label}</td>'
        f'<td style="{cell} text-align: right; font-weight: 600;">{money(amount, currency)}</td></tr>'
        for label, amount in totals
    )
    body = (
        f"<p>Bonjour <strong>{escape(order.get('client_name') or '')}</strong>,</p>"
        f"<p>Merci pour votre commande <strong>{escape(order['order_number'])}</strong> "
        f"du {_day(order.get('created_at'))}. Voici votre facture :</p>"
        '<table style="width: 100%; border-collapse: collapse; margin: 20px 0;">'
        f'<tr><th style="{cell} text-align: left;">Article</th><th style="{cell}">Qte</th>'
        f'<th style="{cell} text-align: right;">Prix</th><th style="{cell} text-align: right;">Montant</th></tr>'
        f"{rows}</table>"
    )
    return email_layout(f"Facture - Commande {order['order_number']}", body)


async def send_sms_invoice(db, config: Dict[str, Any], order_number: Optional[str]) -> str:
    if not order_number:
        return "Numero de commande manquant."
    order, items = _load_order(db, config["user_id"], order_number)
    if not order:
        return f"Commande {order_number} introuvable."
    phone = order.get("client_phone")
    try:
        await send_and_log_sms(db, config["user_id"], phone, invoice_sms(order, items),
                               contact_id=order.get("contact_id"))
    except Exception as e:
        logger.warning(f"Invoice SMS for {order_number} to {phone} failed: {e}")
        return "Erreur lors de l'envoi du SMS. Veuillez reessayer."
    return f"SMS facture envoye avec succes au {phone}."


async def send_email_invoice(db, config: Dict[str, Any], order_number: Optional[str],
                             client_email: Optional[str] = None) -> str:
    if not order_number:
        return "Numero de commande manquant."
    order, items = _load_order(db, config["user_id"], order_number)
    if not order:
        return f"Commande {order_number} introuvable."
    email = order.get("client_email") or client_email
    if not email:
        return ("L'adresse email du client n'est pas disponible. "
                "Impossible d'envoyer la facture par email.")
    try:
        await send_user_email(db, config["user_id"], email, f"Facture - Commande {order_number}",
                              invoice_html(order, items))
    except Exception as e:
        logger.warning(f"Invoice email for {order_number} to {email} failed: {e}")
        return "Erreur lors de l'envoi de l'email. Veuillez reessayer."
    return f"Facture email envoyee avec succes a {email}."


async def handle_action(db, config: Dict[str, Any], body: Dict[str, Any], now: Optional[datetime] = None) -> str:
    action = body.get("action")
    if action == "search_client":
        return search_client(db, config, body.get("query") or "")
    if action == "register_client":
        return register_contact(db, config["user_id"], body)
    if action == "save_order":
        return await save_order(db, config, body, now)
    if action == "send_sms_invoice":
        return await send_sms_invoice(db, config, body.get("order_number"))
    if action == "send_email_invoice":
        return await send_email_invoice(db, config, body.get("order_number"), body.get("client_email"))
    if action == "transfer_call":
        return await transfer_call(db, body.get("call_sid"), body.get("phone_number"))
    return f"Action inconnue: {action}"
