import logging
from typing import Any, Dict, Optional

import httpx

from deploy_console.core.config import Settings

logger = logging.getLogger(__name__)

RULE = "━" * 54
WEBSITE_URL_FIELD = "Website URL"


def build_completion_comment(
    deployment_date: str,
    site_url: Optional[str] = None,
    admin_url: Optional[str] = None,
) -> str:
    lines = [RULE, "✅ **DEPLOYMENT COMPLETED**", RULE, "", f"**Deployment Date:** {deployment_date}", ""]
    if site_url:
        lines.append(f"**🌐 Site URL:** [{site_url}](https://{site_url})")
    if admin_url:
        lines.append(f"**🔐 Admin URL:** [{admin_url}](https://{admin_url})")
    lines.extend(["", RULE])
    return "\n".join(lines) + "\n"


class ClickUpNotifier:
    """
    Posts the deployment result back to the ClickUp task the site was built from.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.base_url = settings.CLICKUP_API_BASE.rstrip("/")
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.settings.CLICKUP_API_TOKEN and self.settings.CLICKUP_API_TOKEN.strip())

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": self.settings.CLICKUP_API_TOKEN.strip(),
            "Content-Type": "application/json",
        }

    async def notify_deployment_complete(
        self,
        task_id: str,
        deployment_date: str,
        site_url: Optional[str] = None,
        admin_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Comment on the task and, when a site URL is known, fill its
        "Website URL" custom field.

        Raises:
            ValueError: if no ClickUp token is configured
            httpx.HTTPError: on transport errors or a rejected comment
        """
        if not self.configured:
            raise ValueError("ClickUp API token not configured")

        comment = build_completion_comment(deployment_date, site_url, admin_url)
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.HTTP_TIMEOUT_SECONDS),
            transport=self._transport,
        ) as client:
            response = await client.post(
                f"{self.base_url}/task/{task_id}/comment",
                json={"comment_text": comment, "notify_all": True},
                headers=self._headers(),
            )
            response.raise_for_status()
            logger.info(f"Posted deployment comment to ClickUp task {task_id}")

            custom_field_updated = False
            if site_url:
                custom_field_updated = await self._update_website_field(client, task_id, site_url)

        return {"task_id": task_id, "comment": True, "custom_fields": custom_field_updated}

    async def _update_website_field(self, client: httpx.AsyncClient, task_id: str, site_url: str) -> bool:
        response = await client.get(f"{self.base_url}/task/{task_id}", headers=self._headers())
        if response.status_code != 200:
            logger.warning(f"Could not load ClickUp task {task_id}: HTTP {response.status_code}")
            return False

        fields = response.json().get("custom_fields") or []
        field_id = next(
            (f.get("id") for f in fields if f.get("name") == WEBSITE_URL_FIELD and f.get("id")),
            None,
        )
        if not field_id:
            return False

        response = await client.post(
            f"{self.base_url}/task/{task_id}/field/{field_id}",
            json={"value": site_url},
            headers=self._headers(),
        )
        return response.status_code == 200
