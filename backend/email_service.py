"""
Service d'emails SendGrid pour Artis Sales
- Alertes critiques immédiates (jobs en échec, events épuisés)
- Alertes SLA (lead non contacté dans les temps)
"""

import os
import logging
from datetime import datetime, timezone
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, Email, To, Content

logger = logging.getLogger("email_service")

# Configuration
SENDGRID_API_KEY = os.environ.get('SENDGRID_API_KEY', '')
ALERT_EMAIL = os.environ.get('ALERT_EMAIL', '')
SENDER_EMAIL = os.environ.get('SENDER_EMAIL', 'noreply@artis-sales.app')


class EmailService:
    """Service centralisé pour l'envoi d'emails"""

    def __init__(self):
        self.api_key = SENDGRID_API_KEY
        self.sender = SENDER_EMAIL
        self.alert_recipient = ALERT_EMAIL

    def _send_email(self, to_email: str, subject: str, html_content: str) -> bool:
        """Envoie un email via SendGrid"""
        if not self.api_key:
            logger.error("SENDGRID_API_KEY non configurée")
            return False
        if not to_email:
            logger.error(f"Pas de destinataire pour: {subject}")
            return False

        try:
            message = Mail(
                from_email=Email(self.sender, "Artis Sales"),
                to_emails=To(to_email),
                subject=subject,
                html_content=Content("text/html", html_content)
            )

            sg = SendGridAPIClient(self.api_key)
            response = sg.send(message)

            if response.status_code in [200, 202]:
                logger.info(f"Email envoyé à {to_email}: {subject}")
                return True
            else:
                logger.error(f"Erreur envoi email: {response.status_code}")
                return False

        except Exception as e:
            logger.error(f"Exception envoi email: {str(e)}")
            return False

    @staticmethod
    def _details_html(details: dict = None) -> str:
        if not details:
            return ""
        items = "".join(
            f"<li><strong>{key}:</strong> {value}</li>" for key, value in details.items()
        )
        return f"<ul>{items}</ul>"

    # ==================== ALERTES CRITIQUES ====================

    def send_critical_alert(self, alert_type: str, message: str, details: dict = None) -> bool:
        """
        Envoie une alerte critique immédiate.
        Types: OUTBOX_EXHAUSTED, SCHEDULER_ERROR, UNROUTED_LEAD
        """
        subject = f"🚨 ALERTE CRITIQUE - {alert_type}"
        details_html = self._details_html(details)

        html_content = f"""
        <!DOCTYPE html>
        <html>
        <body style="font-family: Arial, sans-serif; background-color: #f5f5f5; padding: 20px;">
            <div style="max-width: 600px; margin: 0 auto; background: white; border-radius: 8px;">
                <div style="background: #DC2626; color: white; padding: 20px; text-align: center;">
                    <h1 style="margin: 0; font-size: 24px;">🚨 ALERTE CRITIQUE</h1>
                </div>
                <div style="padding: 30px;">
                    <p style="color: #9CA3AF;">{datetime.now(timezone.utc).strftime('%d/%m/%Y %H:%M:%S')} UTC</p>
                    <div style="background: #FEF2F2; border-left: 4px solid #DC2626; padding: 15px;">
                        <strong>Type:</strong> {alert_type}<br>
                        <strong>Message:</strong> {message}
                    </div>
                    {f'<div style="background: #F3F4F6; padding: 15px; margin-top: 20px;"><strong>Détails:</strong>{details_html}</div>' if details_html else ''}
                    <p style="margin-top: 30px;"><strong>Action requise:</strong> remédiation manuelle.</p>
                </div>
            </div>
        </body>
        </html>
        """

        return self._send_email(self.alert_recipient, subject, html_content)

    # ==================== ALERTE SLA ====================

    def send_sla_breach_alert(self, manager_email: str, lead: dict, rep_name: str, reassigned_to: str = None) -> bool:
        """
        Prévient le manager qu'un lead n'a pas été contacté dans le délai SLA.
        lead = {"id", "name", "city", "sla_due_at"}
        """
        subject = f"⏰ SLA dépassé - Lead {lead.get('name', '')} ({lead.get('city', '')})"
        details = {
            "Lead": lead.get("name", ""),
            "Ville": lead.get("city", ""),
            "Rep": rep_name,
            "Échéance SLA": lead.get("sla_due_at", ""),
            "Réassigné à": reassigned_to or "aucun backup - escalade manager",
        }

        html_content = f"""
        <!DOCTYPE html>
        <html>
        <body style="font-family: Arial, sans-serif; padding: 20px;">
            <h2 style="color: #D97706;">⏰ Lead non contacté dans les temps</h2>
            {self._details_html(details)}
        </body>
        </html>
        """

        return self._send_email(manager_email, subject, html_content)


# Instance globale
email_service = EmailService()
