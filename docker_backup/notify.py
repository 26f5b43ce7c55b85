"""
Run notifications.

The summary of every run is written to the log. When WEBHOOK_URL is set it
is also posted to a chat webhook:
- discord: an embed, green on success and red on failure
- slack: header, summary and details blocks
- telegram: a Bot API sendMessage; WEBHOOK_URL holds the bot token and
  TELEGRAM_CHAT_ID the target chat

Details are truncated to fit the message limits of each platform.
"""

import html
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx

from .config import GlobalConfig
from .models import BackupSummary


logger = logging.getLogger(__name__)

TELEGRAM_API_URL = 'https://api.telegram.org'

# Characters of details kept per platform
DETAIL_LIMITS = {
    'discord': 3900,
    'slack': 2900,
    'telegram': 3500,
}

DISCORD_GREEN = 3066993
DISCORD_RED = 15158332


class NotifyError(Exception):
    """Raised when a webhook notification cannot be delivered."""
    pass


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f'{text[:limit]}... (truncated)'


def log_summary(summary: BackupSummary):
    """Default notifier: write the run summary to the log."""
    level = logging.ERROR if summary.failed else logging.INFO
    logger.log(level, f"Notification [{summary.status}]: {summary.headline()}")
    for line in summary.details().splitlines():
        logger.log(level, line)


def discord_payload(summary: BackupSummary, timestamp: Optional[datetime] = None) -> Dict[str, Any]:
    timestamp = timestamp or datetime.now(timezone.utc)
    return {
        'embeds': [{
            'title': f'Docker Backup: {summary.status.capitalize()}',
            'description': truncate(summary.details(), DETAIL_LIMITS['discord']),
            'color': DISCORD_RED if summary.failed else DISCORD_GREEN,
            'footer': {'text': summary.headline()},
            'timestamp': timestamp.strftime('%Y-%m-%dT%H:%M:%SZ'),
        }]
    }


def slack_payload(summary: BackupSummary) -> Dict[str, Any]:
    emoji = ':x:' if summary.failed else ':white_check_mark:'
    details = truncate(summary.details(), DETAIL_LIMITS['slack'])
    return {
        'blocks': [
            {'type': 'header', 'text': {'type': 'plain_text', 'text': f'{emoji} Docker Backup', 'emoji': True}},
            {'type': 'section', 'text': {'type': 'mrkdwn', 'text': summary.headline()}},
            {'type': 'section', 'text': {'type': 'mrkdwn', 'text': f'```{details}```'}},
        ]
    }


def telegram_payload(summary: BackupSummary, chat_id: str) -> Dict[str, Any]:
    icon = '❌' if summary.failed else '✅'
    details = truncate(summary.details(), DETAIL_LIMITS['telegram'])
    text = (
        f'{icon} <b>Docker Backup: {summary.status.capitalize()}</b>\n\n'
        f'{html.escape(summary.headline())}\n\n'
        f'<pre>{html.escape(details)}</pre>'
    )
    return {
        'chat_id': chat_id,
        'text': text,
        'parse_mode': 'HTML',
        'disable_web_page_preview': True,
    }


class WebhookNotifier:
    """
    Logs the run summary and posts it to a Discord, Slack or Telegram webhook.

    Delivery problems are logged as warnings; a notification never fails
    the run.
    """

    def __init__(self, url: str, webhook_type: str = 'discord', telegram_chat_id: Optional[str] = None,
                 timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        """
        Initialize webhook notifier.

        Args:
            url: Webhook URL (the bot token for telegram)
            webhook_type: 'discord', 'slack' or 'telegram'
            telegram_chat_id: Target chat for telegram
            timeout: Request timeout in seconds
            transport: httpx transport override
        """
        self.url = url
        self.webhook_type = webhook_type
        self.telegram_chat_id = telegram_chat_id
        self.timeout = timeout
        self.transport = transport

    @property
    def endpoint(self) -> str:
        if self.webhook_type == 'telegram':
            return f'{TELEGRAM_API_URL}/bot{self.url}/sendMessage'
        return self.url

    def payload(self, summary: BackupSummary) -> Dict[str, Any]:
        """
        Build the request body for the configured platform.

        Raises:
            NotifyError: If the webhook type is unknown or telegram has no chat
        """
        if self.webhook_type == 'discord':
            return discord_payload(summary)
        if self.webhook_type == 'slack':
            return slack_payload(summary)
        if self.webhook_type == 'telegram':
            if not self.telegram_chat_id:
                raise NotifyError("TELEGRAM_CHAT_ID not set, skipping Telegram notification")
            return telegram_payload(summary, self.telegram_chat_id)
        raise NotifyError(f"Unknown WEBHOOK_TYPE: {self.webhook_type}")

    def send(self, summary: BackupSummary):
        """
        Post the summary to the webhook.

        Raises:
            NotifyError: If the request fails or the webhook rejects it
        """
        payload = self.payload(summary)
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.endpoint, json=payload)
        except httpx.HTTPError as e:
            # The exception text may embed the URL, which carries the telegram token
            raise NotifyError(f"{self.webhook_type} webhook failed: {type(e).__name__}")

        if response.is_error:
            raise NotifyError(
                f"{self.webhook_type} webhook failed: HTTP {response.status_code} {response.text[:200]}"
            )
        logger.debug(f"Sent {self.webhook_type} notification")

    def __call__(self, summary: BackupSummary):
        log_summary(summary)
        try:
            self.send(summary)
        except NotifyError as e:
            logger.warning(str(e))


def create_notifier(config: GlobalConfig) -> Callable[[BackupSummary], None]:
    """
    Notifier for a run: the webhook when WEBHOOK_URL is set, otherwise the log only.
    """
    if config.webhook_url:
        return WebhookNotifier(config.webhook_url, config.webhook_type, config.telegram_chat_id)
    return log_summary
