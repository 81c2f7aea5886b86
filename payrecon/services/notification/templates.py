"""Email templates for payment outcome notifications (French, amounts in FCFA)."""

from html import escape

SUBJECTS = {
    "payment_confirmed": "Paiement confirmé - {tracking_number}",
    "payment_failed": "Échec du paiement - {tracking_number}",
}

_CONFIRMED = """\
<h1>Paiement confirmé</h1>
<p>Bonjour {customer_name},</p>
<p>Nous avons bien reçu votre paiement de <strong>{amount} FCFA</strong>
pour <strong>{company_name}</strong>.</p>
<p>Numéro de suivi : <strong>{tracking_number}</strong><br>
Référence de transaction : {transaction_id}</p>
<p>Notre équipe traite maintenant votre dossier. Vous pouvez suivre son
avancement depuis votre espace client.</p>
<p>L'équipe Legal Form</p>
"""

_FAILED = """\
<h1>Échec du paiement</h1>
<p>Bonjour {customer_name},</p>
<p>Votre paiement de <strong>{amount} FCFA</strong> pour
<strong>{company_name}</strong> n'a pas pu être finalisé.</p>
<p>Numéro de suivi : <strong>{tracking_number}</strong><br>
Référence de transaction : {transaction_id}</p>
<p>Aucun montant n'a été retenu. Vous pouvez relancer le paiement depuis votre
espace client ou contacter notre support.</p>
<p>L'équipe Legal Form</p>
"""

BODIES = {"payment_confirmed": _CONFIRMED, "payment_failed": _FAILED}


def format_amount(amount) -> str:
    """`199000` -> `199 000`."""

    if amount is None:
        return "-"
    return f"{int(amount):,}".replace(",", " ")


def render(kind: str, context: dict) -> tuple[str, str]:
    """Return `(subject, html)` for one notification kind."""

    if kind not in BODIES:
        raise ValueError(f"unknown notification kind: {kind}")
    values = {
        "customer_name": context.get("customer_name") or "cher client",
        "company_name": context.get("company_name") or "votre demande",
        "tracking_number": context.get("tracking_number") or "-",
        "transaction_id": context.get("transaction_id") or "-",
    }
    values = {key: escape(str(value)) for key, value in values.items()}
    values["amount"] = format_amount(context.get("amount"))
    return SUBJECTS[kind].format(**values), BODIES[kind].format(**values)
