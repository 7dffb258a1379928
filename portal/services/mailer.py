import datetime as dt
import logging
import smtplib
from email.message import EmailMessage
from pathlib import Path

from portal.core.config import Settings

log = logging.getLogger("mailer")

OUTBOX_DIR = Path("data/mail_outbox")


def send_email(cfg: Settings, to_addr: str, subject: str, body: str) -> bool:
    host = (cfg.SMTP_HOST or "").strip()
    port = cfg.SMTP_PORT or 0
    user = (cfg.SMTP_USER or "").strip()
    pwd = cfg.SMTP_PASSWORD or None
    from_addr = (cfg.SMTP_FROM or user or "").strip()

    if not (host and port and from_addr and to_addr):
        log.warning(
            "email_not_configured host=%r port=%r from=%r to=%r",
            bool(host), port, from_addr, to_addr,
        )
        return False

    try:
        if port == 465:
            server = smtplib.SMTP_SSL(host, port, timeout=10)
        else:
            server = smtplib.SMTP(host, port, timeout=10)
        server.ehlo()
        try:
            if port != 465:
                server.starttls()
        except smtplib.SMTPException:
            # Some servers may not support STARTTLS; continue without if needed
            pass
        if user and pwd:
            server.login(user, pwd)

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = from_addr
        msg["To"] = to_addr
        msg.set_content(body)
        server.send_message(msg)
        try:
            server.quit()
        except smtplib.SMTPException:
            pass
        log.info("email_sent to=%s subject=%r", to_addr, subject)
        return True
    except Exception as e:
        log.exception("email_send_failed: %s", e)
        return False


def write_outbox_eml(to_addr: str, subject: str, body: str, outdir: Path | None = None) -> str | None:
    """Write a .eml file as a fallback for local inspection."""
    outdir = outdir or OUTBOX_DIR
    try:
        outdir.mkdir(parents=True, exist_ok=True)
        fname = f"mail_{dt.datetime.now(dt.timezone.utc).strftime('%Y%m%dT%H%M%S%fZ')}.eml"
        fpath = outdir / fname
        content = (
            f"To: {to_addr}\nSubject: {subject}\nMIME-Version: 1.0\nContent-Type: text/plain; charset=UTF-8\n\n" + body
        )
        fpath.write_text(content, encoding="utf-8")
        log.warning("email_outboxed path=%s", str(fpath))
        return str(fpath)
    except OSError:
        log.exception("email_outbox_failed to=%s", to_addr)
        return None


def deliver(cfg: Settings, to_addr: str, subject: str, body: str) -> bool:
    if send_email(cfg, to_addr, subject, body):
        return True
    write_outbox_eml(to_addr, subject, body)
    return False


def send_verification_code(cfg: Settings, to_addr: str, username: str, code: str, *, welcome: bool) -> bool:
    if welcome:
        subject = "Welcome to Rainmakers"
        intro = f"Hi {username or 'there'},\n\nThanks for joining Rainmakers. Your payment went through."
    else:
        subject = "Your Rainmakers login code"
        intro = f"Hi {username or 'there'},\n\nHere is your one-time login code."
    body = "\n".join(
        [
            intro,
            "",
            f"Code: {code}",
            "",
            f"Sign in at {cfg.frontend_base}/login and enter the code to continue.",
            "If you did not request this, you can ignore this email.",
        ]
    )
    return deliver(cfg, to_addr, subject, body)
