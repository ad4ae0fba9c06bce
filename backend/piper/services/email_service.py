"""邮件发送服务"""

import asyncio
import html as html_lib
import logging
import smtplib
import time
from email.errors import MessageError
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Any, Dict, List, Optional

import bleach
from jinja2 import Environment, select_autoescape

from piper.core.config import get_settings
from piper.core.i18n import DEFAULT_LOCALE, t
from piper.core.security import PIIMasker

logger = logging.getLogger(__name__)
settings = get_settings()

# 投递结果
SEND_OK = "sent"
SEND_FAILED = "failed"
SEND_BOUNCED = "bounced"


# ============================================================================
# 模板
# ============================================================================

# 正文 HTML 在保存时已经过 bleach 清洗，模板内以 |safe 输出
NEWSLETTER_TEMPLATE = """<!DOCTYPE html>
<html lang="{{ locale }}">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{{ subject }}</title>
</head>
<body style="margin: 0; padding: 0; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif; background-color: #f5f5f7;">
    <table width="100%" cellpadding="0" cellspacing="0" style="background-color: #f5f5f7; padding: 32px 16px;">
        <tr>
            <td align="center">
                <table width="600" cellpadding="0" cellspacing="0" style="background-color: #ffffff; border-radius: 12px;">
                    <tr>
                        <td style="padding: 32px 40px 8px;">
                            <h1 style="margin: 0; color: #1f2937; font-size: 26px;">{{ title }}</h1>
                            {% if description %}<p style="margin: 8px 0 0; color: #6b7280;">{{ description }}</p>{% endif %}
                        </td>
                    </tr>
                    <tr>
                        <td style="padding: 16px 40px; color: #374151; font-size: 16px; line-height: 1.6;">
                            {{ content|safe }}
                            {% for section in sections %}
                            {% if section.heading %}<h2 style="color: #1f2937; font-size: 20px;">{{ section.heading }}</h2>{% endif %}
                            {{ section.body|safe }}
                            {% endfor %}
                        </td>
                    </tr>
                    <tr>
                        <td style="background-color: #f9fafb; padding: 20px 40px; border-top: 1px solid #e5e7eb; color: #9ca3af; font-size: 12px; text-align: center;">
                            {{ footer }}<br>
                            <a href="{{ unsubscribe_url }}" style="color: #6b7280;">{{ unsubscribe_action }}</a>
                        </td>
                    </tr>
                </table>
            </td>
        </tr>
    </table>
    {% if pixel_url %}<img src="{{ pixel_url }}" width="1" height="1" alt="" style="display: none;">{% endif %}
</body>
</html>
"""

CONFIRMATION_TEMPLATE = """<!DOCTYPE html>
<html lang="{{ locale }}">
<head>
    <meta charset="UTF-8">
    <title>{{ subject }}</title>
</head>
<body style="margin: 0; padding: 40px 16px; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif; background-color: #f5f5f7;">
    <table width="600" align="center" cellpadding="0" cellspacing="0" style="background-color: #ffffff; border-radius: 12px;">
        <tr>
            <td style="padding: 40px; text-align: center;">
                <p style="margin: 0 0 24px; color: #374151; font-size: 16px;">{{ body }}</p>
                <a href="{{ confirm_url }}" style="display: inline-block; background-color: #1f2937; color: #ffffff; text-decoration: none; padding: 14px 28px; border-radius: 9999px; font-weight: bold;">
                    {{ action }}
                </a>
            </td>
        </tr>
    </table>
</body>
</html>
"""

_env = Environment(autoescape=select_autoescape(["html", "xml"], default_for_string=True))
_newsletter_template = _env.from_string(NEWSLETTER_TEMPLATE)
_confirmation_template = _env.from_string(CONFIRMATION_TEMPLATE)


def html_to_text(html: str) -> str:
    """HTML 转纯文本（邮件纯文本部分）"""
    text = bleach.clean(html.replace("</p>", "</p>\n").replace("<br>", "\n"), tags=[], strip=True)
    lines = [line.strip() for line in html_lib.unescape(text).splitlines()]
    return "\n".join(line for line in lines if line)


def render_newsletter(
    title: str,
    subject: str,
    content: str,
    sections: List[Dict[str, Any]],
    unsubscribe_url: str,
    description: Optional[str] = None,
    pixel_url: Optional[str] = None,
    locale: str = DEFAULT_LOCALE,
) -> tuple[str, str]:
    """
    渲染通讯邮件

    Returns:
        (html, text)
    """
    footer = t("email.unsubscribe_footer", locale, sender=settings.smtp_from_name)
    unsubscribe_action = t("email.unsubscribe_action", locale)
    html = _newsletter_template.render(
        locale=locale,
        subject=subject,
        title=title,
        description=description,
        content=content,
        sections=sections or [],
        footer=footer,
        unsubscribe_url=unsubscribe_url,
        unsubscribe_action=unsubscribe_action,
        pixel_url=pixel_url,
    )

    text_parts = [title, "", html_to_text(content)]
    for section in sections or []:
        if section.get("heading"):
            text_parts += ["", section["heading"]]
        text_parts.append(html_to_text(section.get("body", "")))
    text_parts += ["", "---", footer, f"{unsubscribe_action}: {unsubscribe_url}"]
    return html, "\n".join(text_parts)


def render_confirmation(title: str, confirm_url: str, locale: str = DEFAULT_LOCALE) -> tuple[str, str, str]:
    """
    渲染订阅确认邮件

    Returns:
        (subject, html, text)
    """
    subject = t("email.confirm_subject", locale, title=title)
    body = t("email.confirm_body", locale, title=title)
    action = t("email.confirm_action", locale)
    html = _confirmation_template.render(
        locale=locale, subject=subject, body=body, action=action, confirm_url=confirm_url
    )
    text = f"{body}\n\n{confirm_url}\n"
    return subject, html, text


# ============================================================================
# 发送
# ============================================================================

class EmailService:
    """邮件发送服务"""

    def __init__(self):
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_username = settings.smtp_username
        self.smtp_password = settings.smtp_password
        self.from_email = settings.smtp_from_email or settings.smtp_username
        self.from_name = settings.smtp_from_name

    @property
    def configured(self) -> bool:
        return bool(self.smtp_username and self.smtp_password)

    async def deliver(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        发送邮件并返回投递结果

        Args:
            to_email: 收件人邮箱
            subject: 邮件主题
            html_content: HTML 内容
            text_content: 纯文本内容（可选）
            headers: 额外邮件头（如 List-Unsubscribe）

        Returns:
            SEND_OK / SEND_FAILED / SEND_BOUNCED
        """
        if not self.configured:
            logger.warning("SMTP credentials not configured, email not sent")
            return SEND_FAILED

        # 在线程池中运行同步代码，避免阻塞事件循环
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            self._send_email_sync,
            to_email,
            subject,
            html_content,
            text_content,
            headers,
        )

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> bool:
        """发送邮件，成功返回 True"""
        result = await self.deliver(to_email, subject, html_content, text_content, headers)
        return result == SEND_OK

    def _build_message(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str],
        headers: Optional[Dict[str, str]],
    ) -> MIMEMultipart:
        fields = {"To": to_email, "Subject": subject, **(headers or {})}
        for name, value in fields.items():
            # 头部值不允许换行
            if "\r" in value or "\n" in value:
                raise ValueError(f"Line break in {name} header")

        message = MIMEMultipart("alternative")
        message["From"] = formataddr((self.from_name, self.from_email))
        for name, value in fields.items():
            message[name] = value

        if text_content:
            message.attach(MIMEText(text_content, "plain", "utf-8"))
        message.attach(MIMEText(html_content, "html", "utf-8"))
        return message

    def _open_connection(self) -> smtplib.SMTP:
        # 587 端口使用 STARTTLS，465 端口使用 SSL
        if self.smtp_port == 465:
            return smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=30)
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        if self.smtp_port == 587:
            server.ehlo()
            server.starttls()
            server.ehlo()
        return server

    def _send_email_sync(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> str:
        """同步发送邮件（在线程池中运行）- 带重试机制"""
        max_retries = 3
        retry_delay = 2  # 初始延迟秒数
        try:
            message = self._build_message(to_email, subject, html_content, text_content, headers)
        except (ValueError, MessageError) as e:
            # 无法构造的邮件不重试
            logger.error(f"Invalid message for {PIIMasker.mask_email(to_email)}: {e}")
            return SEND_FAILED

        for attempt in range(max_retries):
            server = None
            try:
                server = self._open_connection()
                server.login(self.smtp_username, self.smtp_password)
                server.send_message(message)
                logger.info(f"Email sent successfully to {PIIMasker.mask_email(to_email)}")
                return SEND_OK

            except smtplib.SMTPRecipientsRefused:
                # 收件人被拒视为退信，不重试
                logger.warning(f"Recipient refused: {PIIMasker.mask_email(to_email)}")
                return SEND_BOUNCED

            except (ValueError, MessageError) as e:
                logger.error(f"Message rejected before sending: {e}")
                return SEND_FAILED

            except (smtplib.SMTPException, OSError) as e:
                logger.warning(f"SMTP error (attempt {attempt + 1}/{max_retries}): {PIIMasker.mask_text(str(e))}")
                if attempt < max_retries - 1:
                    wait_time = retry_delay * (2 ** attempt)  # 指数退避: 2, 4 秒
                    time.sleep(wait_time)
                    continue
                logger.error("Email sending failed after all retries")
                return SEND_FAILED

            finally:
                if server:
                    try:
                        server.quit()
                    except (smtplib.SMTPException, OSError):
                        logger.debug("SMTP connection already closed")

        return SEND_FAILED

    async def send_confirmation_email(
        self,
        to_email: str,
        newsletter_title: str,
        confirm_url: str,
        locale: str = DEFAULT_LOCALE,
    ) -> bool:
        """发送订阅确认邮件"""
        subject, html, text = render_confirmation(newsletter_title, confirm_url, locale)
        return await self.send_email(to_email, subject, html, text)


# 全局实例
email_service = EmailService()
