"""System prompts and webhook tools for the specialised agent families.

Each builder takes the user's own prompt, the family configuration and the
agent's webhook secret, and returns the full prompt plus the vendor tool list.
"""
import os
from typing import Any, Dict, List, Optional, Tuple

DAY_LABELS = {
    "lun": "Lundi", "mar": "Mardi", "mer": "Mercredi",
    "jeu": "Jeudi", "ven": "Vendredi", "sam": "Samedi", "dim": "Dimanche",
}

CONDITION_DESCRIPTIONS = {
    "demande_conseiller": "Transfer the call when the caller explicitly asks to speak with a human advisor or counselor.",
    "probleme_non_compris": "Transfer the call when the caller mentions a problem that the bot cannot understand or handle.",
    "mot_cle_specifique": "Transfer the call when the caller uses a specific keyword indicating they need human assistance.",
    "reponse_incomprise": "Transfer the call when the caller does not understand the bot's response after multiple attempts.",
    "demande_personne_reelle": "Transfer the call when the caller insists on speaking with a real person.",
    "duree_depassee": "Transfer the call when the conversation has lasted too long without reaching a resolution.",
    "etape_critique": "Transfer the call when the conversation reaches a critical step such as payment, dispute, or complaint.",
}

# Dynamic variables substituted by the voice vendor at call time
CALL_SID = "{{call_sid}}"
CALLER_PHONE = "{{caller_phone}}"

END_CALL_TOOL = {
    "type": "system",
    "name": "end_call",
    "description": "Termine l'appel poliment quand la conversation est terminee ou que le client veut raccrocher.",
    "params": {"system_tool_type": "end_call"},
    "disable_interruptions": False,
    "tool_error_handling_mode": "auto",
}

PHONE_READING_RULE = (
    "- Pour lire un numero de telephone, convertis le format international (+33) en format local (0) "
    "et lis les chiffres par paires. Ne dis jamais \"plus trente-trois\"."
)
EMAIL_DICTATION = """## Collecte d'adresse email par telephone
- "arobase" ou "at" signifie "@", "point" signifie "."
- Confirme TOUJOURS l'adresse email en l'epelant"""

Profile = Tuple[str, List[Dict[str, Any]]]


def webhook_url(family: str) -> str:
    base = os.getenv("PUBLIC_API_URL", "http://localhost:8000").rstrip("/")
    return f"{base}/api/webhooks/{family}"


def _join(*sections: Optional[str]) -> str:
    return "\n\n".join(s.strip() for s in sections if s and s.strip())


def _string(description: str) -> Dict[str, str]:
    return {"type": "string", "description": description}


def webhook_tool(url: str, secret: str, name: str, description: str, action: str,
                 properties: Dict[str, Any], required: List[str], pre_speech: bool = True,
                 disable_interruptions: bool = True) -> Dict[str, Any]:
    tool: Dict[str, Any] = {
        "type": "webhook",
        "name": name,
        "description": description,
        "response_timeout_secs": 20,
        "disable_interruptions": disable_interruptions,
        "api_schema": {
            "url": url,
            "method": "POST",
            "request_headers": {"x-webhook-secret": secret},
            "request_body_schema": {
                "type": "object",
                "properties": dict({"action": _string(f"Toujours '{action}'")}, **properties),
                "required": ["action"] + required,
            },
        },
    }
    if pre_speech:
        tool["force_pre_tool_speech"] = True
    return tool


def transfer_tool(url: str, secret: str) -> Dict[str, Any]:
    return webhook_tool(
        url, secret, "transferer_appel",
        "Transfere l'appel en cours vers un conseiller humain. Utilise cet outil quand le client demande "
        "a parler a un humain ou quand tu ne peux pas repondre a sa question.",
        "transfer_call",
        {
            "call_sid": _string("L'identifiant Twilio de l'appel en cours (fourni dans tes instructions systeme)"),
            "phone_number": _string("Le numero vers lequel transferer l'appel au format international (ex: +33612345678)"),
        },
        ["call_sid", "phone_number"],
        pre_speech=False, disable_interruptions=False,
    )


def transfer_prompt(config: Dict[str, Any], who: str = "client") -> str:
    if not config.get("transfer_enabled"):
        return ""
    default = config.get("default_transfer_number") or ""
    conditions = "\n".join(
        f"- {CONDITION_DESCRIPTIONS.get(c.get('condition'), c.get('condition'))} → "
        f"Transferer vers {c.get('phone') or default}"
        for c in config.get("transfer_conditions") or []
    ) or (f"- Si le {who} demande a parler a un conseiller ou une personne reelle → Transferer vers {default}\n"
          f"- Si tu ne peux pas repondre a la question du {who} apres plusieurs tentatives → Transferer vers {default}")
    lines = [
        "## Transfert d'appel",
        "Tu as la possibilite de transferer l'appel vers un conseiller humain avec l'outil \"transferer_appel\".",
        f"L'identifiant de l'appel en cours est: {CALL_SID}",
        f"Quand tu utilises l'outil \"transferer_appel\", passe TOUJOURS {CALL_SID} comme valeur du champ call_sid.",
        "",
        "Tu DOIS transferer l'appel dans les cas suivants :",
        conditions,
    ]
    if config.get("always_transfer"):
        lines += ["", f"IMPORTANT: Transfere TOUJOURS l'appel vers un conseiller humain au debut de chaque "
                      f"conversation. Numero: {default}"]
    if default:
        lines += ["", f"Numero de transfert par defaut: {default}"]
    lines += [
        "",
        "### Regles de transfert",
        f"- Si le {who} demande explicitement a parler a un humain, transfere immediatement",
        f"- Avant de transferer, informe le {who} que tu vas le mettre en relation avec un conseiller",
    ]
    return "\n".join(lines)


def availability_lines(config: Dict[str, Any]) -> str:
    days = ", ".join(DAY_LABELS.get(d, d) for d in config.get("working_days") or [])
    breaks = ", ".join(f"{b['start']} - {b['end']}" for b in config.get("breaks") or [])
    lines = [
        f"- Jours de travail : {days}",
        f"- Horaires : {config.get('start_time')} - {config.get('end_time')}",
        f"- Duree des creneaux : {config.get('slot_duration_minutes')} minutes",
    ]
    if breaks:
        lines.append(f"- Pauses : {breaks}")
    lines += [
        f"- Delai minimum de reservation : {config.get('min_delay_hours')}h a l'avance",
        f"- Planification maximale : {config.get('max_horizon_days')} jours a l'avance",
    ]
    return "\n".join(lines)


def _availability_tool(url: str, secret: str) -> Dict[str, Any]:
    return webhook_tool(
        url, secret, "verifier_disponibilite",
        "Verifie les creneaux disponibles a une date donnee. Retourne aussi la date actuelle.",
        "check_availability",
        {"date": _string("Date souhaitee: un jour de la semaine (lundi, mardi...), 'demain', 'aujourd'hui', "
                         "'semaine prochaine' ou une date YYYY-MM-DD. Le serveur calculera la date exacte.")},
        ["date"],
    )


def appointment_profile(user_prompt: str, config: Dict[str, Any], secret: str) -> Profile:
    url = webhook_url("appointments")
    availability = ""
    if config.get("availability_enabled", True):
        availability = f"""## Instructions de prise de rendez-vous
Tu es un agent specialise dans la prise de rendez-vous par telephone.
Reponds aux questions des appelants en t'appuyant sur ta base de connaissances, puis aide-les a reserver.

### IMPORTANT - Date et heure
Tu ne connais PAS la date ni l'heure actuelles. Ne calcule JAMAIS une date toi-meme.
Passe directement le mot du client (lundi, demain...) a l'outil "verifier_disponibilite".
La reponse de l'outil contient toujours la date actuelle ([INFO: Aujourd'hui nous sommes le ...]).

### Horaires de disponibilite
{availability_lines(config)}

### Processus de reservation
1. Demande la date souhaitee et utilise TOUJOURS "verifier_disponibilite"
2. Propose les creneaux disponibles
3. Collecte le nom complet, le telephone, l'email (recommande) et le motif (obligatoire)
4. Resume l'echange dans le champ "resume" puis utilise "reserver_rendez_vous"
5. Confirme la date, l'heure, la duree et le motif, et communique le lien de reunion s'il y en a un

### Regles importantes
- Ne propose JAMAIS de creneaux en dehors des horaires configures
- Si aucun creneau n'est disponible, propose d'autres dates"""

    tools = [
        _availability_tool(url, secret),
        webhook_tool(
            url, secret, "reserver_rendez_vous",
            "Reserve un creneau apres avoir confirme l'horaire et collecte les informations du client.",
            "book_appointment",
            {
                "client_name": _string("Nom complet du client"),
                "client_phone": _string("Numero de telephone du client au format international"),
                "client_email": _string("Adresse email du client (optionnel mais recommande)"),
                "date": _string("Date du rendez-vous au format YYYY-MM-DD"),
                "time": _string("Heure du rendez-vous au format HH:MM"),
                "motif": _string("Motif du rendez-vous (obligatoire)"),
                "resume": _string("Resume concis de l'echange avec le client"),
            },
            ["client_name", "client_phone", "date", "time", "motif", "resume"],
        ),
        END_CALL_TOOL,
    ]
    if config.get("transfer_enabled"):
        tools.append(transfer_tool(url, secret))
    return _join(user_prompt, availability, transfer_prompt(config)), tools


def _search_tool(url: str, secret: str, name: str, action: str, noun: str) -> Dict[str, Any]:
    return webhook_tool(
        url, secret, name, f"Recherche un {noun} par numero de telephone, email ou nom.", action,
        {"query": _string("Numero de telephone, adresse email ou nom")}, ["query"],
    )


def _register_tool(url: str, secret: str, with_company: bool = False) -> Dict[str, Any]:
    properties = {
        "first_name": _string("Prenom du client"),
        "last_name": _string("Nom de famille du client"),
        "phone": _string("Numero de telephone du client"),
        "email": _string("Adresse email du client (optionnel)"),
    }
    if with_company:
        properties["company"] = _string("Entreprise du client (optionnel)")
    return webhook_tool(url, secret, "enregistrer_client", "Enregistre un nouveau client.", "register_client",
                        properties, ["first_name", "last_name", "phone"])


def order_profile(user_prompt: str, config: Dict[str, Any], secret: str) -> Profile:
    url = webhook_url("orders")
    currency = config.get("currency") or "EUR"
    tax_rate = float(config.get("tax_rate") or 0)
    tax_info = (f"- Taux de TVA: {tax_rate * 100:.1f}%, applique-le au sous-total pour obtenir le total TTC"
                if tax_rate > 0 else "- Pas de TVA a appliquer")
    role = f"""## Role et objectif
Tu es un agent specialise dans la prise de commande par telephone, pour tout type de commerce.

## Base de connaissances
Consulte ta base de connaissances pour les produits, les prix, les options et les promotions.
REGLE CRITIQUE: Ne JAMAIS inventer un prix. Si un produit n'est pas dans ta base, dis-le au client.

## Parametres de commande
- Devise: {currency}
{tax_info}
- Format des prix: toujours avec 2 decimales (ex: 12.50 {currency})

## Processus de prise de commande
1. Prends chaque article: nom exact, prix de ta base, quantite
2. Annonce le sous-total au fur et a mesure et demande s'il souhaite autre chose
3. Recapitule les articles et le total, puis demande confirmation
4. Le numero du client est {CALLER_PHONE}: utilise "rechercher_client" avec ce numero
5. Si le client est inconnu, collecte son nom (et son email) puis utilise "enregistrer_client"
6. Apres confirmation, utilise "enregistrer_commande" et communique le numero de commande (CMD-XXXXXXXX-XXXXX)

{EMAIL_DICTATION}"""
    notifications = ""
    if config.get("sms_enabled") or config.get("email_enabled"):
        parts = ["## Notifications obligatoires apres validation de commande"]
        if config.get("sms_enabled"):
            parts.append("- Tu DOIS envoyer la facture par SMS avec \"envoyer_sms_facture\" et le numero de commande")
        if config.get("email_enabled"):
            parts.append("- Tu DOIS envoyer la facture par email avec \"envoyer_email_facture\" et le numero de commande")
        notifications = "\n".join(parts)

    order_number = {"order_number": _string("Numero de commande (CMD-XXXXXXXX-XXXXX)")}
    tools = [
        _search_tool(url, secret, "rechercher_client", "search_client", "client"),
        _register_tool(url, secret),
        webhook_tool(
            url, secret, "enregistrer_commande", "Enregistre la commande validee avec tous ses articles.",
            "save_order",
            {
                "client_name": _string("Nom complet du client"),
                "client_phone": _string("Numero de telephone du client"),
                "client_email": _string("Adresse email du client (optionnel)"),
                "items": {
                    "type": "array",
                    "description": "Articles commandes",
                    "items": {
                        "type": "object",
                        "properties": {
                            "name": _string("Nom de l'article"),
                            "quantity": {"type": "number", "description": "Quantite"},
                            "unit_price": {"type": "number", "description": "Prix unitaire"},
                        },
                        "required": ["name", "quantity", "unit_price"],
                    },
                },
                "notes": _string("Remarques sur la commande (optionnel)"),
            },
            ["client_name", "client_phone", "items"],
        ),
        webhook_tool(url, secret, "envoyer_sms_facture", "Envoie la facture de la commande par SMS.",
                     "send_sms_invoice", order_number, ["order_number"]),
        webhook_tool(url, secret, "envoyer_email_facture", "Envoie la facture de la commande par email.",
                     "send_email_invoice", order_number, ["order_number"]),
        END_CALL_TOOL,
    ]
    if config.get("transfer_enabled"):
        tools.append(transfer_tool(url, secret))
    return _join(user_prompt, role, notifications, transfer_prompt(config)), tools


def support_profile(user_prompt: str, config: Dict[str, Any], secret: str) -> Profile:
    url = webhook_url("support")
    role = f"""## Role et mission
Tu es un agent de support client specialise dans le service apres-vente et l'assistance technique.

## Base de connaissances
REGLE CRITIQUE: cherche TOUJOURS une solution dans ta base de connaissances AVANT de proposer un ticket SAV.
Ne cree JAMAIS un ticket sans l'accord explicite du client.

## Workflow obligatoire
1. Identifie le client avec "rechercher_client" et enregistre-le avec "enregistrer_client" s'il est inconnu
2. Ecoute le probleme et reformule-le
3. Propose la solution de ta base de connaissances
4. Si elle ne suffit pas, propose d'ouvrir un ticket et attends la confirmation
5. Cree le ticket avec "creer_ticket_sav" et communique le numero (SAV-XXXXXXXX-XXXXX)
6. Planifie un rendez-vous technique avec "planifier_rdv" si necessaire
7. Resume les actions et les prochaines etapes

## Style de communication
- Sois empathique, clair et concis
- Ne modifie JAMAIS un ticket "closed" sans le rouvrir d'abord
{PHONE_READING_RULE}"""
    notifications = ""
    if config.get("sms_enabled") or config.get("email_enabled"):
        parts = ["## Notifications obligatoires apres creation de ticket"]
        if config.get("sms_enabled"):
            parts.append("- Tu DOIS envoyer un SMS avec \"envoyer_sms\" contenant le numero de ticket")
        if config.get("email_enabled"):
            parts.append("- Tu DOIS envoyer un email avec \"envoyer_email\" contenant le numero de ticket "
                         "et les prochaines etapes")
        notifications = "\n".join(parts)

    case_number = _string("Numero du ticket (SAV-XXXXXXXX-XXXXX)")
    tools = [
        _search_tool(url, secret, "rechercher_client", "search_client", "client"),
        _register_tool(url, secret, with_company=True),
        webhook_tool(
            url, secret, "creer_ticket_sav", "Cree un ticket SAV apres accord explicite du client.", "create_ticket",
            {
                "subject": _string("Sujet court du probleme"),
                "description": _string("Description detaillee du probleme"),
                "priority": _string("low, medium, high ou urgent"),
                "category": _string("general, technical, billing, feature_request ou bug"),
                "client_phone": _string("Numero de telephone du client"),
            },
            ["subject", "description"],
        ),
        webhook_tool(url, secret, "modifier_statut_ticket", "Modifie le statut d'un ticket existant.",
                     "update_ticket_status",
                     {"case_number": case_number,
                      "new_status": _string("open, in_progress, waiting, resolved ou closed")},
                     ["case_number", "new_status"]),
        webhook_tool(url, secret, "ajouter_note_ticket", "Ajoute une note a un ticket.", "add_ticket_note",
                     {"case_number": case_number, "content": _string("Contenu de la note")},
                     ["case_number", "content"]),
        webhook_tool(url, secret, "envoyer_sms", "Envoie un SMS au client.", "send_sms",
                     {"phone_number": _string("Numero du client"), "message": _string("Texte du SMS")},
                     ["phone_number", "message"]),
        webhook_tool(url, secret, "envoyer_email", "Envoie un email au client.", "send_email",
                     {"email": _string("Adresse email du client"), "subject": _string("Sujet"),
                      "body": _string("Contenu de l'email")},
                     ["email", "subject", "body"]),
        webhook_tool(
            url, secret, "planifier_rdv", "Planifie un rendez-vous technique ou un rappel de 30 minutes.",
            "schedule_meeting",
            {
                "client_name": _string("Nom complet du client"),
                "client_phone": _string("Numero de telephone du client"),
                "client_email": _string("Adresse email du client (optionnel)"),
                "date": _string("Date au format YYYY-MM-DD"),
                "time": _string("Heure au format HH:MM"),
                "motif": _string("Motif du rendez-vous"),
            },
            ["client_name", "client_phone", "date", "time", "motif"],
        ),
        END_CALL_TOOL,
    ]
    if config.get("transfer_enabled"):
        tools.append(transfer_tool(url, secret))
    return _join(user_prompt, role, notifications, transfer_prompt(config)), tools


def commercial_profile(user_prompt: str, config: Dict[str, Any], secret: str) -> Profile:
    url = webhook_url("commercial")
    product = config.get("product_name") or ""
    offer = f'"{product}"' if product else "nos produits/services"
    availability = ""
    if config.get("availability_enabled"):
        availability = f"""### Horaires de disponibilite
{availability_lines(config)}

### IMPORTANT - Prise de rendez-vous
Utilise TOUJOURS "verifier_disponibilite" avant de proposer un horaire, puis "proposer_rendez_vous" pour reserver."""
    product_section = "\n".join(filter(None, [
        "## Produit / Service" if product or config.get("product_description") else "",
        f"**Nom:** {product}" if product else "",
        f"**Description:** {config['product_description']}" if config.get("product_description") else "",
    ]))
    pitch = f"## Argumentaire de vente\n{config['sales_pitch']}" if config.get("sales_pitch") else ""
    objections = (f"## Gestion des objections\n{config['objection_handling']}"
                  if config.get("objection_handling") else "")
    fillers = ""
    if config.get("filler_words"):
        fillers = ("## Style de parole naturel\nUtilise occasionnellement ces expressions, environ une phrase sur trois :\n"
                   + "\n".join(f'- "{w}"' for w in config["filler_words"]))
    role = f"""## Role et objectif
Tu es un agent commercial specialise dans la prospection telephonique.
Tu appelles des prospects pour presenter {offer}.
Ton objectif est de qualifier l'interet du prospect et, si possible, d'obtenir un rendez-vous de suivi.

## Contexte du contact
- Nom du contact: {{{{contact_name}}}}
- Entreprise: {{{{contact_company}}}}
- Telephone: {CALLER_PHONE}
Si ces informations sont vides, utilise "rechercher_contact" avec {CALLER_PHONE}.

## Processus d'appel commercial
1. Presente-toi et verifie l'identite du contact, puis enchaine avec l'accroche
2. Presente l'offre et reponds aux objections
3. Evalue l'interet de 1 a 5
4. Interesse: collecte l'email puis propose un rendez-vous. Rappel souhaite: note la date
5. UTILISE TOUJOURS "enregistrer_qualification" avant de terminer l'appel
6. Si le prospect donne de nouvelles informations, utilise "mettre_a_jour_contact"

{EMAIL_DICTATION}

## Regles importantes
- Ne dis JAMAIS "Comment puis-je vous aider": c'est toi qui proposes un service
- Ne force JAMAIS la vente
{PHONE_READING_RULE}"""
    documentation = ""
    if config.get("sms_enabled") or config.get("email_enabled"):
        parts = ["## Envoi de documentation"]
        if config.get("sms_enabled"):
            parts.append("- Tu peux envoyer un SMS d'information produit avec \"envoyer_sms\"")
        if config.get("email_enabled"):
            parts.append("- Tu peux envoyer un email avec les details du produit avec \"envoyer_email\"")
        documentation = "\n".join(parts)

    tools = [
        _search_tool(url, secret, "rechercher_contact", "search_contact", "contact"),
        webhook_tool(
            url, secret, "enregistrer_qualification", "Enregistre le resultat de la qualification du prospect.",
            "save_qualification",
            {
                "status": _string("interested, not_interested, callback, transferred ou converted"),
                "interest_level": {"type": "number", "description": "Niveau d'interet de 1 a 5"},
                "notes": _string("Resume de l'echange"),
                "caller_phone": _string(f"Numero du prospect ({CALLER_PHONE})"),
                "callback_date": _string("Date de rappel souhaitee au format YYYY-MM-DD (optionnel)"),
            },
            ["status", "caller_phone"], pre_speech=False,
        ),
        webhook_tool(
            url, secret, "mettre_a_jour_contact", "Met a jour la fiche du contact.", "update_contact",
            {
                "caller_phone": _string(f"Numero du prospect ({CALLER_PHONE})"),
                "first_name": _string("Prenom"),
                "last_name": _string("Nom"),
                "email": _string("Adresse email"),
                "company": _string("Entreprise"),
                "city": _string("Ville"),
                "notes": _string("Notes a ajouter"),
            },
            ["caller_phone"], pre_speech=False,
        ),
        webhook_tool(
            url, secret, "proposer_rendez_vous", "Reserve un rendez-vous de suivi de 30 minutes.", "book_followup",
            {
                "client_name": _string("Nom complet du prospect"),
                "client_phone": _string("Numero de telephone du prospect"),
                "client_email": _string("Adresse email du prospect"),
                "date": _string("Date au format YYYY-MM-DD"),
                "time": _string("Heure au format HH:MM"),
                "motif": _string("Objet du rendez-vous"),
            },
            ["client_name", "client_phone", "date", "time"],
        ),
        webhook_tool(url, secret, "envoyer_sms", "Envoie un SMS d'information au prospect.", "send_sms",
                     {"phone": _string("Numero du prospect"), "content": _string("Texte du SMS")},
                     ["phone", "content"]),
        webhook_tool(url, secret, "envoyer_email", "Envoie un email avec les details du produit.", "send_email",
                     {"email": _string("Adresse email du prospect"), "subject": _string("Sujet"),
                      "content": _string("Contenu de l'email"), "client_name": _string("Nom du prospect")},
                     ["email", "content"]),
        END_CALL_TOOL,
    ]
    if config.get("transfer_enabled"):
        tools.append(transfer_tool(url, secret))
    if config.get("availability_enabled"):
        tools.append(_availability_tool(url, secret))
    prompt = _join(user_prompt, role, availability, product_section, pitch, objections, fillers, documentation,
                   transfer_prompt(config, who="prospect"))
    return prompt, tools
