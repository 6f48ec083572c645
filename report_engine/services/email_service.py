"""
邮件服务
通过 SMTP 发送带附件的报表邮件（定时报表分发使用）
"""
import os
import smtplib
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional, Union

from ..utils.logger import get_logger

logger = get_logger(__name__)


class EmailService:
    """邮件服务类"""

    def __init__(
        self,
        smtp_host: Optional[str] = None,
        smtp_port: Optional[int] = None,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_from_email: Optional[str] = None,
        smtp_from_name: Optional[str] = None,
        smtp_tls: Optional[bool] = None,
    ):
        """
        初始化邮件服务，未传入的参数从环境变量 SMTP_* 读取

        Args:
            smtp_host: SMTP服务器地址
            smtp_port: SMTP端口（默认587）
            smtp_user: 登录用户名
            smtp_password: 登录密码
            smtp_from_email: 发件人地址
            smtp_from_name: 发件人名称
            smtp_tls: 是否使用 STARTTLS（默认开启）
        """
        self.smtp_host = smtp_host or os.getenv("SMTP_HOST")
        self.smtp_port = smtp_port or int(os.getenv("SMTP_PORT", "587"))
        self.smtp_user = smtp_user or os.getenv("SMTP_USER")
        self.smtp_password = smtp_password or os.getenv("SMTP_PASSWORD")
        self.smtp_from_email = smtp_from_email or os.getenv("SMTP_FROM_EMAIL", "noreply@report-engine.local")
        self.smtp_from_name = smtp_from_name or os.getenv("SMTP_FROM_NAME", "Report Engine")
        self.smtp_tls = smtp_tls if smtp_tls is not None else os.getenv(
            "SMTP_TLS", "true"
        ).lower() in ("true", "1", "yes")

    def is_configured(self) -> bool:
        return bool(self.smtp_host)

    def send_email(
        self,
        to: Union[List[str], str],
        subject: str,
        body: str,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """
        发送邮件

        Args:
            to: 收件人
            subject: 主题
            body: 纯文本正文
            attachments: 附件列表，每项包含 filename / content / mimetype

        Returns:
            发送结果: {"success", "message", "recipients_count", "error"}

        Raises:
            ValueError: SMTP未配置或收件人为空
        """
        if not self.is_configured():
            raise ValueError("SMTP 未配置（缺少 SMTP_HOST）")

        to_list = [to] if isinstance(to, str) else list(to)
        if not to_list:
            raise ValueError("至少需要一个收件人")

        msg = MIMEMultipart()
        msg["Subject"] = subject
        msg["From"] = f"{self.smtp_from_name} <{self.smtp_from_email}>"
        msg["To"] = ", ".join(to_list)
        msg.attach(MIMEText(body, "plain", _charset="utf-8"))

        for attachment in attachments or []:
            filename = attachment.get("filename")
            content = attachment.get("content")
            if not filename or not content:
                logger.warning(f"跳过无效附件: filename={filename}")
                continue

            mimetype = attachment.get("mimetype") or "application/octet-stream"
            subtype = mimetype.partition("/")[2]
            part = MIMEApplication(content, _subtype=subtype.split(";")[0] or "octet-stream")
            part.add_header("Content-Disposition", "attachment", filename=filename)
            msg.attach(part)

        try:
            logger.info(f"发送邮件: recipients={len(to_list)}, subject={subject[:50]}")

            with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
                if self.smtp_tls:
                    server.starttls()
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(msg, to_addrs=to_list)

            logger.info(f"邮件发送成功: recipients={len(to_list)}")
            return {
                "success": True,
                "message": "邮件发送成功",
                "recipients_count": len(to_list),
            }

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP发送失败: {e}", exc_info=True)
            return {
                "success": False,
                "message": "邮件发送失败",
                "error": str(e),
                "recipients_count": 0,
            }

    def send_report_email(
        self,
        to: List[str],
        report_name: str,
        filename: str,
        content: bytes,
        mimetype: str = "application/pdf",
        executed_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        """发送报表邮件（附件为导出的报表文件）"""
        body = f"附件为定时报表: {report_name}\n"
        if executed_at:
            body += f"执行时间: {executed_at}\n"

        return self.send_email(
            to=to,
            subject=f"报表: {report_name}",
            body=body,
            attachments=[{"filename": filename, "content": content, "mimetype": mimetype}],
        )


# 全局邮件服务实例
_email_service = None


def get_email_service() -> EmailService:
    """获取全局邮件服务实例"""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service
