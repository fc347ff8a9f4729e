import html as html_lib
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Dict, Any

from config import EMAIL_CONFIG, EMAIL_ENABLED, OPS_EMAILS, ENV
from logger import get_logger

log = get_logger("emailer")


def send_email(to_addrs: List[str], subject: str, html: str) -> bool:
    if not to_addrs:
        log.warning("No recipients for email; skipping.")
        return False
    if not EMAIL_ENABLED:
        log.info(f"Email disabled; not sending: {subject} -> {to_addrs}")
        return False

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = EMAIL_CONFIG["from_addr"]
    msg["To"] = ", ".join(to_addrs)

    msg.attach(MIMEText(html, "html"))

    try:
        with smtplib.SMTP(EMAIL_CONFIG["smtp_server"], EMAIL_CONFIG["smtp_port"]) as server:
            server.starttls()
            if EMAIL_CONFIG["smtp_password"]:
                server.login(EMAIL_CONFIG["smtp_username"], EMAIL_CONFIG["smtp_password"])
            server.sendmail(msg["From"], to_addrs, msg.as_string())
        log.info(f"Email sent: {subject} -> {to_addrs}")
        return True
    except Exception as e:
        log.error(f"Failed sending email: {e}")
        return False


def send_ops_alert(title: str, details: Dict[str, Any], footer: str = "") -> bool:
    """Operational alert to OPS_EMAILS. Used when the system cannot self-heal."""
    rows = "".join(
        f"<tr><td style='padding:8px;border:1px solid #ddd;'><b>{html_lib.escape(str(k))}</b></td>"
        f"<td style='padding:8px;border:1px solid #ddd;'>{html_lib.escape(str(v))}</td></tr>"
        for k, v in details.items()
    )
    body = f"""
    <div style="font-family:Segoe UI,Arial,sans-serif; max-width:900px;">
      <h2 style="color:#b00020;">{html_lib.escape(title)}</h2>
      <table style="border-collapse:collapse;width:100%; font-size:14px;">
        {rows}
      </table>
      <p style="color:#666;">{html_lib.escape(footer)}</p>
    </div>
    """
    return send_email(OPS_EMAILS, f"[{ENV}] {title}", body)
