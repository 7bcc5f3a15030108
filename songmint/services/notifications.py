"""Billing and support emails sent through Resend.

Sending is fire-and-forget: every public method returns False instead of
raising, so a mail outage never fails webhook processing.
"""
from datetime import datetime
from decimal import Decimal
from html import escape
from typing import Optional
import json
import logging

import resend

from songmint.config import Settings
from songmint.models import Song
from songmint.services.support import AccountSnapshot

logger = logging.getLogger(__name__)

_FOOTER = """
  <hr style="margin: 30px 0; border: none; border-top: 1px solid #e5e7eb;">
  <p style="font-size: 14px; color: #6b7280;">
    Need help? Reply to this email or visit our <a href="{app_url}/support">support center</a>.
  </p>
</div>
"""


class EmailNotifier:

    def __init__(self, api_key: Optional[str], from_email: str, app_url: str, reply_to: Optional[str] = None,
                 support_inbox: Optional[str] = None):
        self._api_key = (api_key or "").strip()
        self._from_email = from_email
        self._app_url = app_url
        self._reply_to = reply_to
        self._support_inbox = support_inbox or reply_to

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailNotifier":
        return cls(settings.resend_api_key, settings.billing_from_email, settings.app_url,
                   reply_to=settings.support_email, support_inbox=settings.support_email)

    def send(self, to_email: str, subject: str, html: str, reply_to: Optional[str] = None) -> bool:
        if not self._api_key:
            logger.info(f"RESEND_API_KEY not configured; skipping email '{subject}'")
            return False
        if not to_email:
            return False

        params = {
            "from": self._from_email,
            "to": [to_email],
            "subject": subject,
            "html": html.strip(),
        }
        reply_to = reply_to or self._reply_to
        if reply_to:
            params["reply_to"] = reply_to

        resend.api_key = self._api_key
        try:
            resend.Emails.send(params)
        except Exception as e:
            logger.error(f"Failed to send email '{subject}' to {to_email}: {e}")
            return False

        logger.info(f"Sent email '{subject}' to {to_email}")
        return True

    def _wrap(self, body: str) -> str:
        header = '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">'
        return header + body + _FOOTER.format(app_url=self._app_url)

    def send_subscription_welcome(self, to_email: str, plan_name: str, credits: int, amount: Decimal) -> bool:
        body = f"""
  <h2 style="color: #7c3aed;">Welcome to Song Mint {plan_name}!</h2>
  <p>Your subscription is active and your first {credits} credits are ready to use.</p>
  <div style="background: #f8fafc; border-radius: 8px; padding: 20px; margin: 20px 0;">
    <ul style="margin: 0; padding-left: 20px;">
      <li><strong>{credits} credits</strong> every month</li>
      <li>Each credit creates 1 song with 2 unique versions</li>
      <li>Credits roll over if unused</li>
    </ul>
  </div>
  <p style="color: #065f46;"><strong>Amount charged: ${amount:.2f}</strong></p>
  <p><a href="{self._app_url}/create" style="color: #7c3aed;">Create your first song</a></p>
"""
        return self.send(to_email, f"Welcome to Song Mint {plan_name}!", self._wrap(body))

    def send_billing_success(self, to_email: str, credits: int, amount: Decimal) -> bool:
        body = f"""
  <h2 style="color: #7c3aed;">Payment Successful!</h2>
  <p>Your monthly subscription payment has been processed successfully.</p>
  <div style="background: #f8fafc; border-radius: 8px; padding: 20px; margin: 20px 0;">
    <h3 style="margin: 0 0 10px 0; color: #1f2937;">What you received:</h3>
    <ul style="margin: 0; padding-left: 20px;">
      <li><strong>{credits} new credits</strong> added to your account</li>
      <li>Each credit creates 1 song with 2 unique versions</li>
      <li>Credits roll over if unused</li>
    </ul>
  </div>
  <div style="background: #ecfdf5; border-radius: 8px; padding: 20px; margin: 20px 0;">
    <p style="margin: 0; color: #065f46;"><strong>Amount charged: ${amount:.2f}</strong></p>
  </div>
  <p>Ready to create your next song? <a href="{self._app_url}/create" style="color: #7c3aed;">Start creating now!</a></p>
"""
        return self.send(to_email, f"Your {credits} credits have been added!", self._wrap(body))

    def send_purchase_confirmation(self, to_email: str, credits: int, amount: Decimal) -> bool:
        body = f"""
  <h2 style="color: #7c3aed;">Thanks for your purchase!</h2>
  <p><strong>{credits} credits</strong> have been added to your Song Mint account.</p>
  <div style="background: #ecfdf5; border-radius: 8px; padding: 20px; margin: 20px 0;">
    <p style="margin: 0; color: #065f46;"><strong>Amount paid: ${amount:.2f}</strong></p>
  </div>
  <p><a href="{self._app_url}/create" style="color: #7c3aed;">Create a song now</a></p>
"""
        return self.send(to_email, f"Your Song Mint purchase: {credits} credits", self._wrap(body))

    def _account_table(self, account: AccountSnapshot) -> str:
        rows = [
            ("Email", account.email or "No email"),
            ("User ID", account.user_id),
            ("Full Name", account.full_name or "Not provided"),
            ("Credits Remaining", "Unknown" if account.credits_remaining is None else account.credits_remaining),
            ("Subscription Status", account.subscription_status or "None"),
            ("Account Created", _date(account.created_at)),
            ("Total Songs", account.total_songs),
        ]
        cells = "".join(
            f'<tr><td style="padding: 8px; border: 1px solid #ddd; font-weight: bold;">{label}:</td>'
            f'<td style="padding: 8px; border: 1px solid #ddd;">{escape(str(value))}</td></tr>'
            for label, value in rows
        )
        table = f'<table style="border-collapse: collapse; width: 100%; margin-bottom: 20px;">{cells}</table>'
        if account.recent_songs:
            items = "".join(
                f"<li><strong>{escape(song.title)}</strong> - Status: {escape(song.status)} "
                f"(Created: {_date(song.created_at)})</li>"
                for song in account.recent_songs
            )
            table += f"<h3>Recent Songs:</h3><ul>{items}</ul>"
        return table

    def send_support_request(self, account: AccountSnapshot, subject: str, message: str) -> bool:
        if not self._support_inbox:
            logger.error("No support inbox configured; dropping support request")
            return False
        body = f"""
  <h2>Support Request from Song Mint User</h2>
  <h3>User Information:</h3>
  {self._account_table(account)}
  <h3>Support Request:</h3>
  <p><strong>Subject:</strong> {escape(subject)}</p>
  <div style="background-color: #f8f9fa; padding: 15px; border-left: 4px solid #007bff; margin: 10px 0;">
    {_paragraphs(message)}
  </div>
"""
        return self.send(self._support_inbox, f"Support Request: {subject}", body, reply_to=account.email)

    def send_issue_report(self, account: AccountSnapshot, song: Song, description: str,
                          song_url: Optional[str] = None) -> bool:
        if not self._support_inbox:
            logger.error("No support inbox configured; dropping issue report")
            return False
        audio = [url for url in (song.audio_url, song.backup_audio_url) if url]
        audio_items = "".join(
            f'<li><strong>Version {i}:</strong> <a href="{escape(url)}">{escape(url)}</a></li>'
            for i, url in enumerate(audio, start=1)
        ) or "<li>No audio URLs available</li>"
        genres = (song.questionnaire_data or {}).get("genres") or (song.questionnaire_data or {}).get("genre")
        if isinstance(genres, list):
            genres = ", ".join(str(g) for g in genres)
        page = escape(song_url or f"{self._app_url}/dashboard")

        body = f"""
  <h2>Song Generation Issue Report</h2>
  <h3>User Information:</h3>
  {self._account_table(account)}
  <h3>Song Information:</h3>
  <ul>
    <li><strong>Song ID:</strong> {escape(song.id)}</li>
    <li><strong>Song Page URL:</strong> <a href="{page}">{page}</a></li>
    <li><strong>Created At:</strong> {_date(song.created_at)}</li>
    <li><strong>Song Title:</strong> {escape(song.title or "Untitled")}</li>
    <li><strong>Status:</strong> {escape(song.status)}</li>
    <li><strong>Genre:</strong> {escape(str(genres or "Not specified"))}</li>
  </ul>
  <h3>Audio Files:</h3>
  <ul>{audio_items}</ul>
  <h3>Issue Description:</h3>
  <p>{_paragraphs(description)}</p>
  <h3>Song Data:</h3>
  <pre>{escape(json.dumps(song.questionnaire_data, indent=2, default=str))}</pre>
  <h3>Technical Details:</h3>
  <ul>
    <li><strong>Mureka Task ID:</strong> {escape(song.mureka_task_id or "Not available")}</li>
    <li><strong>Lyrics:</strong> <pre>{escape(song.generated_lyrics or "Not available")}</pre></li>
  </ul>
"""
        if song.mureka_data:
            mureka = escape(json.dumps(song.mureka_data, indent=2, default=str))
            body += f"  <h3>Mureka API Response:</h3>\n  <pre>{mureka}</pre>\n"
        subject = f"Song Issue Report - User: {account.email or account.user_id} - Song: {song.id}"
        return self.send(self._support_inbox, subject, body, reply_to=account.email)


def _date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d") if value else "Unknown"


def _paragraphs(text: str) -> str:
    return escape(text).replace("\n", "<br>")
