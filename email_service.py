"""
Email delivery for MovePost via the Resend API.

send_email() is the raw delivery call used by the send-email function
endpoint. The send_*_email helpers render the branded templates and are
best effort: they report failures in the returned dict instead of raising.
"""

import os
import html
import logging
from datetime import datetime
from typing import Dict, Any, Optional, List, Union

import requests

from errors import EmailError, ValidationError

logger = logging.getLogger(__name__)

RESEND_API_KEY = os.environ.get('RESEND_API_KEY')
RESEND_API_URL = 'https://api.resend.com/emails'
EMAIL_FROM = os.environ.get('EMAIL_FROM', 'contact@fluxium.dev')
FRONTEND_URL = os.environ.get('FRONTEND_URL', 'http://localhost:5174')
SUPPORT_EMAIL = 'support@movepost.com'

TIMEOUT = (5, 30)

# Card accent colors
GREEN = '#10B981'
TEAL = '#20B2AA'
AMBER = '#F59E0B'
RED = '#EF4444'
BLUE = '#0EA5E9'


def send_email(to: Union[str, List[str]], subject: str, html_body: str,
               from_address: Optional[str] = None, reply_to: Optional[str] = None) -> Dict[str, Any]:
    """Send an email through Resend. Raises EmailError on failure."""
    if not to or not subject or not html_body:
        raise ValidationError('Missing required fields: to, subject, or html')

    if not RESEND_API_KEY:
        raise EmailError('RESEND_API_KEY not configured', 500)

    sender = from_address or f'MovePost <{EMAIL_FROM}>'
    recipients = to if isinstance(to, list) else [to]

    payload = {
        'from': sender,
        'to': recipients,
        'subject': subject,
        'html': html_body,
    }
    if reply_to:
        payload['reply_to'] = reply_to

    logger.info(f"Sending email to {recipients}: {subject}")

    try:
        response = requests.post(
            RESEND_API_URL,
            headers={
                'Content-Type': 'application/json',
                'Authorization': f'Bearer {RESEND_API_KEY}',
            },
            json=payload,
            timeout=TIMEOUT
        )
    except requests.RequestException as e:
        raise EmailError(f'Resend request failed: {str(e)}')

    try:
        data = response.json()
    except ValueError:
        data = {'message': response.text[:500]}

    if not response.ok:
        logger.error(f"Resend API error: {data}")
        raise EmailError(f'Resend API error: {data}')

    logger.info(f"Email sent successfully: {data.get('id')}")
    return {'success': True, 'id': data.get('id'), 'message': 'Email sent successfully'}


def render_email_template(content: str, card_color: str = TEAL) -> str:
    """Wrap card content in the MovePost branded layout."""
    year = datetime.now().year
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>MovePost</title>
  <style>
    body {{ margin: 0; padding: 0; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif; background-color: #f7fafc; color: #2d3748; }}
    .email-wrapper {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
    .email-content {{ background: white; padding: 40px 30px; border-radius: 12px; }}
    .card {{ border: 2px solid {card_color}; border-radius: 12px; padding: 30px; margin: 20px 0; }}
    .card-icon {{ width: 48px; height: 48px; border-radius: 50%; color: {card_color}; font-size: 24px; margin-bottom: 20px; }}
    h1 {{ color: #1a202c; font-size: 24px; margin: 0 0 20px 0; }}
    p {{ color: #4a5568; font-size: 16px; line-height: 1.6; margin: 0 0 15px 0; }}
    .cta-button {{ display: inline-block; padding: 14px 28px; background: {card_color}; color: white; text-decoration: none; border-radius: 8px; font-weight: 600; margin: 20px 0; }}
    .footer {{ text-align: center; padding: 30px 20px; color: #a0aec0; font-size: 14px; }}
    .footer a {{ color: {TEAL}; text-decoration: none; }}
  </style>
</head>
<body>
  <div class="email-wrapper">
    <div class="email-content">
      {content}
      <p style="font-size: 14px; color: #718096;">
        If you have any questions, please contact us at
        <a href="mailto:{SUPPORT_EMAIL}" style="color: {TEAL};">{SUPPORT_EMAIL}</a>
      </p>
    </div>
    <div class="footer">
      <p>&copy; {year} MovePost. All rights reserved.</p>
      <p><a href="{FRONTEND_URL}/dashboard">Dashboard</a> &bull; <a href="{FRONTEND_URL}/settings">Settings</a></p>
    </div>
  </div>
</body>
</html>"""


def _deliver(to: str, subject: str, content: str, card_color: str) -> Dict[str, Any]:
    try:
        return send_email(to, subject, render_email_template(content, card_color))
    except Exception as e:
        logger.warning(f"Email '{subject}' to {to} failed (non-fatal): {str(e)}")
        return {'success': False, 'error': str(e)}


def _esc(value: Any) -> str:
    return html.escape(str(value if value is not None else ''))


def _money(amount: Optional[float]) -> str:
    return f"${(amount or 0):.2f}"


def _reason_block(reason: str, background: str, border: str) -> str:
    return (f'<p style="background: {background}; padding: 15px; border-radius: 8px; '
            f'border-left: 4px solid {border};">{_esc(reason)}</p>')


# ============================================================================
# CAMPAIGN EMAILS
# ============================================================================

def send_campaign_approved_email(user_email: str, campaign_name: str, campaign_id: str,
                                 approved_at: Optional[str] = None) -> Dict[str, Any]:
    approved_on = (approved_at or datetime.now().isoformat())[:10]
    content = f"""
    <div class="card">
      <div class="card-icon">&#10003;</div>
      <h1>Your Campaign is Live!</h1>
      <p>Great news! Your campaign "<strong>{_esc(campaign_name)}</strong>" has been approved and is now active.</p>
      <p>We'll start monitoring for new movers in your target area and automatically send postcards to matching homeowners.</p>
      <ul style="color: #4a5568; line-height: 1.8;">
        <li>Approved: {_esc(approved_on)}</li>
        <li>Status: Active</li>
        <li>Polling: Enabled</li>
      </ul>
      <a href="{FRONTEND_URL}/campaigns/{_esc(campaign_id)}" class="cta-button">View Campaign Dashboard</a>
    </div>"""
    return _deliver(user_email, 'Your MovePost Campaign is Live!', content, GREEN)


def send_campaign_rejected_email(user_email: str, campaign_name: str, campaign_id: str,
                                 rejection_reason: str) -> Dict[str, Any]:
    content = f"""
    <div class="card">
      <div class="card-icon">&#9888;</div>
      <h1>Action Required: Campaign Needs Updates</h1>
      <p>Your campaign "<strong>{_esc(campaign_name)}</strong>" requires some updates before we can approve it.</p>
      <p><strong>Reason:</strong></p>
      {_reason_block(rejection_reason, '#FEF2F2', RED)}
      <p>Please review the feedback and update your campaign. Once you've made the necessary changes, we'll review it again promptly.</p>
      <a href="{FRONTEND_URL}/campaigns/{_esc(campaign_id)}/edit" class="cta-button">Edit Campaign</a>
    </div>"""
    return _deliver(user_email, 'Action Required: Campaign Needs Updates', content, AMBER)


def send_campaign_paused_email(user_email: str, campaign_name: str, pause_reason: str) -> Dict[str, Any]:
    content = f"""
    <div class="card">
      <div class="card-icon">&#9208;</div>
      <h1>Your Campaign Has Been Paused</h1>
      <p>We've paused your campaign "<strong>{_esc(campaign_name)}</strong>".</p>
      <p><strong>Reason:</strong></p>
      {_reason_block(pause_reason, '#FFFBEB', AMBER)}
      <p>No new postcards will be sent until the campaign is resumed.</p>
      <a href="{FRONTEND_URL}/contact" class="cta-button">Contact Support</a>
    </div>"""
    return _deliver(user_email, 'Your Campaign Has Been Paused', content, AMBER)


def send_campaign_resumed_email(user_email: str, campaign_name: str, campaign_id: str) -> Dict[str, Any]:
    content = f"""
    <div class="card">
      <div class="card-icon">&#9654;</div>
      <h1>Your Campaign is Active Again</h1>
      <p>Good news! Your campaign "<strong>{_esc(campaign_name)}</strong>" has been resumed and is now active.</p>
      <p>We've restarted monitoring for new movers and will continue sending postcards to matching homeowners in your target area.</p>
      <a href="{FRONTEND_URL}/campaigns/{_esc(campaign_id)}" class="cta-button">View Campaign</a>
    </div>"""
    return _deliver(user_email, 'Your Campaign is Active Again', content, BLUE)


# ============================================================================
# ACCOUNT EMAILS
# ============================================================================

def send_user_blocked_email(user_email: str, block_reason: str) -> Dict[str, Any]:
    content = f"""
    <div class="card">
      <div class="card-icon">&#128274;</div>
      <h1>Account Access Restricted</h1>
      <p>Your MovePost account has been temporarily restricted.</p>
      <p><strong>Reason:</strong></p>
      {_reason_block(block_reason, '#FEF2F2', RED)}
      <p>If you believe this is an error or would like to appeal this decision, please contact our support team.</p>
      <a href="mailto:{SUPPORT_EMAIL}?subject=Account Restriction Appeal" class="cta-button">Contact Support</a>
    </div>"""
    return _deliver(user_email, 'Account Access Restricted', content, RED)


def send_user_unblocked_email(user_email: str) -> Dict[str, Any]:
    content = f"""
    <div class="card">
      <div class="card-icon">&#128275;</div>
      <h1>Welcome Back! Your Account is Restored</h1>
      <p>Great news! Your MovePost account has been restored and you now have full access again.</p>
      <a href="{FRONTEND_URL}/login" class="cta-button">Login to Dashboard</a>
    </div>"""
    return _deliver(user_email, 'Welcome Back! Your Account is Restored', content, GREEN)


# ============================================================================
# PAYMENT EMAILS
# ============================================================================

def send_payment_failed_email(user_email: str, amount: float, failure_reason: str) -> Dict[str, Any]:
    content = f"""
    <div class="card">
      <div class="card-icon">&#128179;</div>
      <h1>Payment Failed - Action Required</h1>
      <p>We were unable to process your payment for your MovePost campaign.</p>
      <ul style="color: #4a5568; line-height: 1.8;">
        <li>Amount: {_money(amount)}</li>
        <li>Reason: {_esc(failure_reason)}</li>
        <li>Date: {datetime.now().strftime('%Y-%m-%d')}</li>
      </ul>
      <p>Please update your payment method to continue your campaign. Your postcards will resume automatically once payment is successful.</p>
      <a href="{FRONTEND_URL}/settings/billing" class="cta-button">Update Payment Method</a>
    </div>"""
    return _deliver(user_email, 'Payment Failed - Action Required', content, RED)


def send_payment_requires_action_email(user_email: str, amount: float,
                                       authentication_url: str) -> Dict[str, Any]:
    content = f"""
    <div class="card">
      <div class="card-icon">&#128272;</div>
      <h1>Complete Payment Authentication</h1>
      <p>Your payment requires additional authentication to complete.</p>
      <p>Please click the button below to complete the 3D Secure verification with your bank.</p>
      <p><strong>Amount:</strong> {_money(amount)}</p>
      <a href="{_esc(authentication_url)}" class="cta-button">Complete Authentication</a>
    </div>"""
    return _deliver(user_email, 'Complete Payment Authentication', content, AMBER)


# ============================================================================
# ADMIN EMAILS
# ============================================================================

def send_admin_new_campaign_email(admin_email: str, campaign_name: str, campaign_id: str,
                                  customer_name: str, customer_email: str,
                                  created_at: Optional[str] = None) -> Dict[str, Any]:
    content = f"""
    <div class="card">
      <div class="card-icon">&#128203;</div>
      <h1>New Campaign Awaiting Review</h1>
      <p>A new campaign has been submitted and requires your review.</p>
      <ul style="color: #4a5568; line-height: 1.8;">
        <li>Campaign: {_esc(campaign_name)}</li>
        <li>Customer: {_esc(customer_name)} ({_esc(customer_email)})</li>
        <li>Submitted: {_esc(created_at or datetime.now().isoformat())}</li>
      </ul>
      <a href="{FRONTEND_URL}/admin/campaigns/{_esc(campaign_id)}" class="cta-button">Review Campaign</a>
    </div>"""
    return _deliver(admin_email, 'New Campaign Awaiting Review', content, TEAL)


def send_admin_payment_issue_email(admin_email: str, user_id: str, customer_name: str,
                                   customer_email: str, amount: float, failure_reason: str) -> Dict[str, Any]:
    content = f"""
    <div class="card">
      <div class="card-icon">&#9888;</div>
      <h1>Customer Payment Issue</h1>
      <p>A customer is experiencing payment issues that may require attention.</p>
      <ul style="color: #4a5568; line-height: 1.8;">
        <li>Customer: {_esc(customer_name)} ({_esc(customer_email)})</li>
        <li>Amount: {_money(amount)}</li>
        <li>Failure Reason: {_esc(failure_reason)}</li>
        <li>Date: {datetime.now().strftime('%Y-%m-%d %H:%M')}</li>
      </ul>
      <a href="{FRONTEND_URL}/admin/users/{_esc(user_id)}" class="cta-button">View Customer Account</a>
    </div>"""
    return _deliver(admin_email, 'Customer Payment Issue', content, AMBER)
