"""
Notification service for PatchPilot
Announces new upstream versions and automatic update results via Discord and Apprise
"""

import asyncio
import logging
from typing import List, Optional, Sequence

import httpx

from config.settings import AppConfig
from database import CandidateVersion, ManagedContainer

logger = logging.getLogger(__name__)

DISCORD_CHUNK_SIZE = 2000


def chunk_message(message: str, size: int = DISCORD_CHUNK_SIZE) -> List[str]:
    """
    Split a message into chunks of at most `size` characters, cutting after
    the last newline inside each window when there is one.
    """
    chunks = []
    remaining = message
    while remaining:
        split_point = min(size, len(remaining))
        if split_point < len(remaining):
            newline = max(remaining.rfind('\n', 0, split_point), remaining.rfind('\r', 0, split_point))
            if newline != -1:
                split_point = newline + 1
        chunks.append(remaining[:split_point])
        remaining = remaining[split_point:]
    return chunks


def _yes_no(flag: bool) -> str:
    return "Yes :x:" if flag else "No :white_check_mark:"


def build_new_version_message(main: ManagedContainer, others: Sequence[ManagedContainer],
                              versions: Sequence[CandidateVersion], base_url: Optional[str] = None) -> str:
    """Markdown announcement for newly discovered versions, newest first in the details"""
    base_url = AppConfig.BASE_URL if base_url is None else base_url
    names = ' + '.join([main.name, *(other.name for other in others)])
    newest = versions[-1] if versions else None

    lines = [f"# 🎉 {names} UPDATE 🎉", "", "🚀 **Version Details**"]
    if newest is not None:
        lines.append(f"- **New Version:** `{newest.version_number}`")
    lines.append(f"- **Previously Used Version:** `{main.version or 'Missing'}`")
    lines.append(f"- **Breaking Change Algorithm:** {_yes_no(any(v.breaking for v in versions))}")
    if any(v.ai_breaking is not None for v in versions):
        lines.append(f"- **Breaking Change AI:** {_yes_no(any(v.ai_breaking for v in versions))}")
    if any(v.suspected_malicious is not None for v in versions):
        lines.append(f"- **Suspicious Changes:** {_yes_no(any(v.suspected_malicious for v in versions))}")
    lines.append(f"- **Prerelease:** {_yes_no(any(v.prerelease for v in versions))}")
    lines.append("")

    for version in versions:
        flags = [
            flag for flag, enabled in (
                ("[PRERELEASE]", version.prerelease),
                ("[BREAKING]", version.breaking),
                ("[AI BREAKING]", version.ai_breaking),
                ("[SUSPICIOUS]", version.suspected_malicious),
            ) if enabled
        ]
        lines.append(f"## 📜 Release Notes - {' '.join([version.version_number, *flags])}")
        if version.ai_summary:
            lines.append(f"**AI Summary:** {version.ai_summary}")
        if version.security_analysis:
            lines.append(f"**Security Analysis:** {version.security_analysis}")
        lines.append(version.body or "_No release notes._")
        lines.append("")

    if main.effective_repo:
        lines.append(f"https://github.com/{main.effective_repo}/releases")

    if base_url:
        lines.append(f"__Verify and Update Here:__ {base_url.rstrip('/')}/versions/{main.id}")
    else:
        lines.append("__**PATCHPILOT_BASE_URL is not set, an update link cannot be provided.**__")

    return '\n'.join(lines)


def build_auto_update_message(container_name: str, target_version: str, success: bool,
                              error: Optional[str] = None) -> str:
    if success:
        return f"# ✅ {container_name} AUTO-UPDATED\n\nAutomatically updated to `{target_version}`."
    message = f"# ❌ {container_name} AUTO-UPDATE FAILED\n\nUpdating to `{target_version}` failed."
    if error:
        message += f"\n\n**Error:** {error}"
    return message


class NotificationService:
    """Fans messages out to every configured channel"""

    def __init__(self, discord_webhook_url: Optional[str] = None, apprise_api_url: Optional[str] = None,
                 apprise_urls: Optional[List[str]] = None, chunk_delay: float = 1.0):
        self.discord_webhook_url = discord_webhook_url if discord_webhook_url is not None else AppConfig.DISCORD_WEBHOOK_URL
        api_url = apprise_api_url if apprise_api_url is not None else AppConfig.APPRISE_API_URL
        self.apprise_api_url = api_url.rstrip('/') if api_url else None
        self.apprise_urls = apprise_urls if apprise_urls is not None else AppConfig.APPRISE_NOTIFICATION_URLS
        self.chunk_delay = chunk_delay
        self.http_client = httpx.AsyncClient(timeout=30.0)

        if not self.is_configured:
            logger.info("No notification channel configured (DISCORD_WEBHOOK_URL / APPRISE_API_URL)")

    @property
    def discord_enabled(self) -> bool:
        return bool(self.discord_webhook_url)

    @property
    def apprise_enabled(self) -> bool:
        return bool(self.apprise_api_url and self.apprise_urls)

    @property
    def is_configured(self) -> bool:
        return self.discord_enabled or self.apprise_enabled

    async def send(self, message: str) -> bool:
        """Send to all channels. True when at least one channel delivered."""
        delivered = 0

        if self.discord_enabled and await self._send_discord(message):
            delivered += 1

        if self.apprise_enabled and await self._send_apprise(message):
            delivered += 1

        if self.is_configured and delivered == 0:
            logger.warning("All notification attempts failed")
        return delivered > 0

    async def _send_discord(self, message: str) -> bool:
        """Send notification via Discord webhook, chunked to Discord's message limit"""
        try:
            chunks = chunk_message(message)
            for index, chunk in enumerate(chunks):
                payload = {
                    'content': chunk,
                    'username': 'PatchPilot',
                    'flags': 4,  # Suppress link embeds
                }
                response = await self.http_client.post(self.discord_webhook_url, json=payload)
                response.raise_for_status()
                if index < len(chunks) - 1 and self.chunk_delay:
                    await asyncio.sleep(self.chunk_delay)

            logger.info("Discord notification sent successfully")
            return True

        except Exception as e:
            logger.error(f"Failed to send Discord notification: {e}")
            return False

    async def _send_apprise(self, message: str) -> bool:
        """Send notification via an Apprise API server"""
        try:
            payload = {'body': message, 'urls': ','.join(self.apprise_urls)}
            response = await self.http_client.post(f"{self.apprise_api_url}/notify", json=payload)
            response.raise_for_status()

            logger.info(f"Apprise notification sent to {len(self.apprise_urls)} endpoints")
            return True

        except Exception as e:
            logger.error(f"Failed to send Apprise notification: {e}")
            return False

    async def send_new_versions(self, main: ManagedContainer, others: Sequence[ManagedContainer],
                                versions: Sequence[CandidateVersion]) -> bool:
        return await self.send(build_new_version_message(main, others, versions))

    async def send_auto_update_result(self, container_name: str, target_version: str,
                                      success: bool, error: Optional[str] = None) -> bool:
        sent = await self.send(build_auto_update_message(container_name, target_version, success, error))
        if not sent:
            logger.error(f"Failed to send auto-update notification for {container_name}")
        return sent

    async def close(self):
        await self.http_client.aclose()
