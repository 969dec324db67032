"""
sitedb Alert System
Sends database alerts via Email (SMTP) and Slack webhooks.
"""
import smtplib
import asyncio
import aiohttp
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from datetime import datetime
from typing import Optional, Dict, Any
from ..config import AlertConfig
from ..models import ClassifiedError, ErrorSeverity, HealthReport, HealthStatus, PerformanceAlert

logger = logging.getLogger(__name__)

_SEVERITY_COLORS = {
    ErrorSeverity.LOW: "good",
    ErrorSeverity.MEDIUM: "warning",
    ErrorSeverity.HIGH: "danger",
    ErrorSeverity.CRITICAL: "danger",
}


class AlertManager:
    """Delivers database alerts through the enabled channels."""

    def __init__(self, config: Optional[AlertConfig] = None):
        self.config = config or AlertConfig()
        self.alert_count = 0
        self.alert_reset_time = datetime.now()
        self.session: Optional[aiohttp.ClientSession] = None

    async def initialize(self):
        """Initialize async resources."""
        if self.config.slack_enabled:
            self.session = aiohttp.ClientSession()

    async def cleanup(self):
        """Cleanup async resources."""
        if self.session:
            await self.session.close()
            self.session = None

    def _can_send_alert(self, force: bool = False) -> bool:
        """Check the hourly rate limit."""
        if force:
            return True

        # resets counter if hour has passed
        if (datetime.now() - self.alert_reset_time).total_seconds() >= 3600:
            self.alert_count = 0
            self.alert_reset_time = datetime.now()

        if self.alert_count >= self.config.max_alerts_per_hour:
            logger.warning("Alert rate limit exceeded")
            return False

        return True

    def _send_email_sync(self, subject: str, body: str):
        """Send email notification (synchronous)."""
        if not self.config.email_enabled:
            return

        if not self.config.email_recipients:
            logger.warning("No email recipients configured")
            return

        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = f"[sitedb] {subject}"
            msg['From'] = self.config.smtp_user
            msg['To'] = ", ".join(self.config.email_recipients)
            msg.attach(MIMEText(body, 'plain'))

            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port) as server:
                server.starttls()
                server.login(self.config.smtp_user, self.config.smtp_password)
                server.send_message(msg)

            logger.info(f"Email sent: {subject}")

        except Exception as e:
            logger.error(f"Failed to send email: {e}")

    async def _send_slack(self, message: str, color: str = "good"):
        """Send Slack notification."""
        if not self.config.slack_enabled or not self.session:
            return

        try:
            payload = {
                "attachments": [{
                    "color": color,
                    "text": message,
                    "footer": "sitedb Alert System",
                    "ts": int(datetime.now().timestamp())
                }]
            }

            async with self.session.post(
                self.config.slack_webhook_url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=10)
            ) as response:
                if response.status == 200:
                    logger.info("Slack notification sent")
                else:
                    logger.error(f"Slack notification failed: {response.status}")

        except Exception as e:
            logger.error(f"Failed to send Slack notification: {e}")

    async def send_alert(
        self,
        alert_type: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        force: bool = False,
        color: str = "good"
    ) -> bool:
        """Send alert via all enabled channels. Returns False when rate limited."""
        if not self._can_send_alert(force):
            return False

        full_message = f"*{alert_type}*\n{message}"
        if details:
            full_message += "\n\nDetails:\n"
            for key, value in details.items():
                full_message += f"- {key}: {value}\n"

        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        full_message += f"\nTime: {timestamp}"

        # email goes through the thread pool to avoid blocking
        if self.config.email_enabled:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                self._send_email_sync,
                alert_type,
                full_message.replace("*", "")
            )

        if self.config.slack_enabled:
            await self._send_slack(full_message, color)

        self.alert_count += 1
        return True

    async def alert_critical_error(self, error: ClassifiedError) -> bool:
        """Alert on a critical database error; bypasses the rate limit."""
        return await self.send_alert(
            "Critical Database Error",
            error.message[:200],
            details={
                "Error ID": error.id,
                "Category": error.category.value,
                "Operation": error.context.get('operation'),
                "Table": error.context.get('table'),
                "Recovery Attempts": error.recovery_attempts,
            },
            force=True,
            color="danger"
        )

    async def alert_performance(self, alert: PerformanceAlert) -> bool:
        """Alert on a performance threshold breach."""
        return await self.send_alert(
            f"Performance Alert: {alert.type}",
            alert.message,
            details={
                "Severity": alert.severity.value.upper(),
                "Threshold": alert.threshold,
                "Current Value": round(alert.current_value, 2),
            },
            force=(alert.severity == ErrorSeverity.CRITICAL),
            color=_SEVERITY_COLORS[alert.severity]
        )

    async def alert_health_report(self, report: HealthReport) -> bool:
        """Alert when a health report is not healthy."""
        if report.overall_health == HealthStatus.HEALTHY:
            return False

        critical = report.overall_health == HealthStatus.CRITICAL
        return await self.send_alert(
            "Database Health Issue",
            "; ".join(report.issues) or "Health report flagged the database",
            details={
                "Status": report.overall_health.value.upper(),
                "Recommendations": " / ".join(report.recommendations) or "none",
            },
            force=critical,
            color="danger" if critical else "warning"
        )

    async def test_notifications(self) -> Dict[str, bool]:
        """Test all notification channels."""
        results = {
            "email": False,
            "slack": False
        }

        if self.config.email_enabled:
            try:
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(
                    None,
                    self._send_email_sync,
                    "Test Notification",
                    "This is a test notification from sitedb. If you receive this, email alerts are working."
                )
                results["email"] = True
            except Exception as e:
                logger.error(f"Email test failed: {e}")

        if self.config.slack_enabled:
            try:
                await self._send_slack(
                    "*Test Notification*\n\nThis is a test notification from sitedb. If you receive this, Slack alerts are working.",
                    color="good"
                )
                results["slack"] = True
            except Exception as e:
                logger.error(f"Slack test failed: {e}")

        return results
