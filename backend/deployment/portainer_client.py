"""
Portainer remote stack storage.

Stacks deployed through Portainer have no compose file on this host. Their
configuration is read and written through the Portainer API, authenticating
with username/password and caching the returned JWT until it expires.
"""

import base64
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from config.settings import AppConfig

logger = logging.getLogger(__name__)


class PortainerError(Exception):
    """Portainer rejected a request"""
    pass


def jwt_expiry(token: str) -> Optional[datetime]:
    """Read the exp claim of a JWT without verifying it"""
    try:
        payload = token.split('.')[1]
        payload += '=' * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload))
        return datetime.fromtimestamp(int(claims['exp']), tz=timezone.utc)
    except (IndexError, KeyError, TypeError, ValueError):
        return None


class PortainerClient:
    """Reads and updates stack files through the Portainer API"""

    DEFAULT_TOKEN_LIFETIME = timedelta(hours=8)

    def __init__(self, url: Optional[str] = None, username: Optional[str] = None,
                 password: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.url = (url if url is not None else AppConfig.PORTAINER_URL or '').rstrip('/')
        self.username = username if username is not None else AppConfig.PORTAINER_USERNAME
        self.password = password if password is not None else AppConfig.PORTAINER_PASSWORD
        self.http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._jwt: Optional[str] = None
        self._jwt_expiry: Optional[datetime] = None

        if not self.is_configured:
            logger.info("PORTAINER_URL, PORTAINER_USERNAME or PORTAINER_PASSWORD missing, Portainer integration disabled")

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.username and self.password)

    async def _ensure_authenticated(self) -> bool:
        if self._jwt and self._jwt_expiry and self._jwt_expiry > datetime.now(timezone.utc):
            return True

        logger.info("Authenticating with Portainer")
        response = await self.http_client.post(
            f"{self.url}/api/auth",
            json={'username': self.username, 'password': self.password},
        )
        if response.status_code != 200:
            logger.warning(f"Portainer authentication failed with status {response.status_code}")
            return False

        token = response.json().get('jwt')
        if not token:
            logger.warning("Failed parsing Portainer auth response")
            return False

        self._jwt = token
        self._jwt_expiry = jwt_expiry(token) or datetime.now(timezone.utc) + self.DEFAULT_TOKEN_LIFETIME
        return True

    def _auth_headers(self) -> dict:
        return {'Authorization': f'Bearer {self._jwt}'}

    async def _get_stack(self, stack_name: str) -> Optional[dict]:
        if not self.is_configured or not await self._ensure_authenticated():
            return None

        filters = json.dumps({'Name': stack_name})
        response = await self.http_client.get(
            f"{self.url}/api/stacks",
            params={'filters': filters},
            headers=self._auth_headers(),
        )
        if response.status_code != 200:
            logger.warning(f"Could not list Portainer stacks: HTTP {response.status_code}")
            return None

        stacks = response.json() or []
        if not stacks:
            logger.warning(f"No Portainer stack named {stack_name}")
            return None
        return stacks[0]

    async def get_stack_content(self, stack_name: str) -> Optional[str]:
        """Compose file content of a stack, None when it can't be fetched"""
        stack = await self._get_stack(stack_name)
        if stack is None:
            return None

        response = await self.http_client.get(
            f"{self.url}/api/stacks/{stack['Id']}/file",
            params={'endpointId': stack['EndpointId']},
            headers=self._auth_headers(),
        )
        if response.status_code != 200:
            logger.warning(f"Could not get Portainer stack file for {stack_name}: HTTP {response.status_code}")
            return None

        return response.json().get('StackFileContent')

    async def update_stack_content(self, stack_name: str, content: str) -> bool:
        """
        Replace the stack file and let Portainer pull and redeploy.

        Raises:
            PortainerError: stack missing or update rejected
        """
        stack = await self._get_stack(stack_name)
        if stack is None:
            raise PortainerError(f"No Portainer stack named {stack_name}")

        response = await self.http_client.put(
            f"{self.url}/api/stacks/{stack['Id']}",
            params={'endpointId': stack['EndpointId']},
            json={'stackFileContent': content, 'pullImage': True},
            headers=self._auth_headers(),
        )
        if response.status_code != 200:
            raise PortainerError(
                f"Could not update Portainer stack {stack_name}: HTTP {response.status_code} {response.text[:300]}"
            )

        logger.info(f"Updated Portainer stack {stack_name}")
        return True

    async def close(self):
        await self.http_client.aclose()
