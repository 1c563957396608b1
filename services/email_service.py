"""
Email Service for Leave Notifications
Builds the leave workflow emails and sends them via SMTP
"""

import smtplib
import os
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from datetime import datetime
from html import escape
from typing import Optional
import logging

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


_STYLE = """
    <style>
        body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; margin: 0; padding: 0; }
        .container { max-width: 600px; margin: 0 auto; padding: 20px; background-color: #f9f9f9; }
        .header { color: white; padding: 30px 20px; text-align: center; border-radius: 10px 10px 0 0; }
        .header h1 { margin: 0; font-size: 24px; }
        .content { background: white; padding: 30px; border-radius: 0 0 10px 10px; box-shadow: 0 4px 6px rgba(0,0,0,0.1); }
        .details { background: #f8f9fa; padding: 20px; margin: 20px 0; border-radius: 8px; border-left: 4px solid #667eea; }
        .btn { display: inline-block; padding: 12px 30px; color: white; text-decoration: none; border-radius: 5px; margin: 10px 5px; }
        .approve { background: #28a745; }
        .reject { background: #dc3545; }
        .footer { text-align: center; color: #777; font-size: 12px; padding: 20px; }
    </style>
"""

_HEADER_COLORS = {
    "request": "linear-gradient(135deg, #667eea 0%, #764ba2 100%)",
    "Approved": "linear-gradient(135deg, #11998e 0%, #38ef7d 100%)",
    "Rejected": "linear-gradient(135deg, #cb2d3e 0%, #ef473a 100%)",
    "info": "linear-gradient(135deg, #2193b0 0%, #6dd5ed 100%)",
}


def _details_html(leave: dict) -> str:
    reason = leave.get("reason")
    return f"""
        <div class="details">
            <p style="margin: 0; font-weight: bold;">Leave Details:</p>
            <ul style="margin: 10px 0;">
                <li><strong>Employee:</strong> {escape(leave.get("employee_name") or "")}</li>
                <li><strong>Leave Type:</strong> {escape(leave.get("leave_type") or "")}</li>
                <li><strong>From:</strong> {leave.get("start_date")}</li>
                <li><strong>To:</strong> {leave.get("end_date")}</li>
                <li><strong>Days:</strong> {leave.get("number_of_days")}</li>
                {f'<li><strong>Reason:</strong> {escape(reason)}</li>' if reason else ''}
            </ul>
        </div>
    """


def _details_text(leave: dict) -> str:
    lines = [
        f"- Employee: {leave.get('employee_name')}",
        f"- Leave Type: {leave.get('leave_type')}",
        f"- From: {leave.get('start_date')}",
        f"- To: {leave.get('end_date')}",
        f"- Days: {leave.get('number_of_days')}",
    ]
    if leave.get("reason"):
        lines.append(f"- Reason: {leave.get('reason')}")
    return "\n".join(lines)


def _wrap(kind: str, title: str, inner: str) -> str:
    return f"""
    <!DOCTYPE html>
    <html>
    <head>{_STYLE}</head>
    <body>
        <div class="container">
            <div class="header" style="background: {_HEADER_COLORS.get(kind, _HEADER_COLORS['info'])};">
                <h1>{title}</h1>
            </div>
            <div class="content">{inner}</div>
            <div class="footer">
                <p>This is an automated email from HRM System</p>
                <p>Time: {datetime.now().strftime("%Y-%m-%d %H:%M:%S")}</p>
            </div>
        </div>
    </body>
    </html>
    """


class EmailService:
    """
    SMTP email sender for the leave workflow.

    Three kinds of mail:
    - approval request to an HOD/admin, optionally with one-click links
    - decision notice to the employee once the request is final
    - informational notice to the rest of the organization on final approval

    Every method returns True/False; SMTP errors are logged, never raised.
    """

    def __init__(self):
        self.smtp_server = os.getenv("SMTP_SERVER", "smtp.gmail.com")
        self.smtp_port = int(os.getenv("SMTP_PORT", "587"))
        self.smtp_username = os.getenv("SMTP_USERNAME")
        self.smtp_password = os.getenv("SMTP_PASSWORD")
        self.from_email = os.getenv("SMTP_FROM_EMAIL", self.smtp_username)
        self.from_name = os.getenv("SMTP_FROM_NAME", "HRM System")

        if not self.smtp_username or not self.smtp_password:
            logger.warning("⚠️  SMTP credentials not configured in .env file!")
            logger.warning("Email sending will fail until SMTP_USERNAME and SMTP_PASSWORD are set")

    def send_leave_application_email(
        self,
        to_email: str,
        approver_name: str,
        leave: dict,
        approve_link: Optional[str] = None,
        reject_link: Optional[str] = None,
        prior_decision: Optional[str] = None,
    ) -> bool:
        """
        Ask an approver to act on a leave request.

        Args:
            to_email: Approver email
            approver_name: Shown in the greeting
            leave: Snapshot dict (employee_name, leave_type, start_date, end_date, number_of_days, reason)
            approve_link / reject_link: One-click links; omitted when tokens could not be issued
            prior_decision: e.g. "Approved by HOD" when the other gate already acted
        """
        subject = f"Leave Approval Required - {leave.get('employee_name')} ({leave.get('leave_type')})"

        buttons_html = ""
        buttons_text = "Please log in to the HRM portal to approve or reject this request."
        if approve_link and reject_link:
            buttons_html = f"""
                <p style="text-align: center;">
                    <a class="btn approve" href="{approve_link}">✓ Approve</a>
                    <a class="btn reject" href="{reject_link}">✗ Reject</a>
                </p>
                <p style="font-size: 12px; color: #777;">These links can be used once and expire in 7 days.</p>
            """
            buttons_text = f"Approve: {approve_link}\nReject: {reject_link}"

        prior_html = f'<p><strong>Status so far:</strong> {escape(prior_decision)}</p>' if prior_decision else ""
        prior_text = f"Status so far: {prior_decision}\n" if prior_decision else ""

        html_body = _wrap("request", "📝 Leave Approval Required", f"""
            <p style="font-size: 16px;">Hello <strong>{escape(approver_name or "")}</strong>,</p>
            <p>A leave request is waiting for your decision.</p>
            {_details_html(leave)}
            {prior_html}
            {buttons_html}
        """)

        text_body = (
            f"Leave Approval Required - HRM System\n\n"
            f"Hello {approver_name},\n\n"
            f"A leave request is waiting for your decision.\n\n"
            f"{_details_text(leave)}\n\n"
            f"{prior_text}"
            f"{buttons_text}\n"
        )

        return self.send_email(to_email, subject, html_body, text_body)

    def send_leave_decision_email(
        self,
        to_email: str,
        employee_name: str,
        leave: dict,
        status: str,
        approver_name: str,
        remark: Optional[str] = None,
    ) -> bool:
        """Tell the employee their request is finally Approved or Rejected."""
        icon = "✅" if status == "Approved" else "❌"
        subject = f"Leave {status} - {leave.get('leave_type')} ({leave.get('start_date')} to {leave.get('end_date')})"

        remark_html = f"<p><strong>Remark:</strong> {escape(remark)}</p>" if remark else ""
        html_body = _wrap(status, f"{icon} Leave {status}", f"""
            <p style="font-size: 16px;">Hello <strong>{escape(employee_name or "")}</strong>,</p>
            <p>Your leave request has been <strong>{status.lower()}</strong> by {escape(approver_name or "")}.</p>
            {_details_html(leave)}
            {remark_html}
        """)

        text_body = (
            f"Leave {status} - HRM System\n\n"
            f"Hello {employee_name},\n\n"
            f"Your leave request has been {status.lower()} by {approver_name}.\n\n"
            f"{_details_text(leave)}\n"
            + (f"\nRemark: {remark}\n" if remark else "")
        )

        return self.send_email(to_email, subject, html_body, text_body)

    def send_leave_info_email(self, to_email: str, recipient_name: str, leave: dict, approver_name: str) -> bool:
        """Informational notice; no action required from the recipient."""
        subject = f"Leave Notice - {leave.get('employee_name')} on leave {leave.get('start_date')} to {leave.get('end_date')}"

        html_body = _wrap("info", "📅 Leave Notice", f"""
            <p style="font-size: 16px;">Hello <strong>{escape(recipient_name or "")}</strong>,</p>
            <p>For your information, the following leave has been approved by {escape(approver_name or "")}.</p>
            {_details_html(leave)}
            <p style="color: #777;">No action is required.</p>
        """)

        text_body = (
            f"Leave Notice - HRM System\n\n"
            f"Hello {recipient_name},\n\n"
            f"For your information, the following leave has been approved by {approver_name}.\n\n"
            f"{_details_text(leave)}\n\n"
            f"No action is required.\n"
        )

        return self.send_email(to_email, subject, html_body, text_body)

    def send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """
        Send one multipart (plain text + HTML) message via SMTP with STARTTLS.

        Returns:
            True if sent successfully, False otherwise
        """
        if not self.smtp_username or not self.smtp_password:
            logger.error(f"❌ SMTP credentials not configured; not sending '{subject}' to {to_email}")
            return False

        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = subject
            msg['From'] = f"{self.from_name} <{self.from_email}>"
            msg['To'] = to_email

            # Email clients will use HTML if available, otherwise plain text
            msg.attach(MIMEText(text_body, 'plain'))
            msg.attach(MIMEText(html_body, 'html'))

            logger.info(f"📧 Connecting to SMTP server: {self.smtp_server}:{self.smtp_port}")
            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=30) as server:
                server.starttls()
                server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)
                logger.info(f"✅ Email sent successfully to: {to_email}")

            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"❌ SMTP Authentication Failed: {e}")
            logger.error("Check your SMTP_USERNAME and SMTP_PASSWORD in .env")
            return False

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"❌ SMTP Error sending to {to_email}: {e}")
            return False


# Global instance shared by the notification dispatcher
email_service = EmailService()
