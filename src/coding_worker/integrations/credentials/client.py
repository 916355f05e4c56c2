"""Client for the token-issuing service.

Installation tokens are short-lived and scoped to one owner and a set of
repositories. They are requested once per task and never cached.
"""

import logging
from typing import List

import requests

from ...errors import CredentialUnavailable
from ...utils.validators import validate_identifier

logger = logging.getLogger(__name__)

TOKEN_ENDPOINT = "/api/v1/github/installation-token"


class CredentialGateway:
    """Fetches repository-scoped installation tokens."""

    def __init__(self, base_url: str, timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def fetch_token(
        self,
        org_id: str,
        user_id: str,
        task_id: str,
        owner: str,
        repo_names: List[str],
        auth_token: str,
    ) -> str:
        """
        Request an installation token for owner/repo_names.

        Args:
            org_id: Organization identifier
            user_id: Submitting user identifier
            task_id: Task identifier
            owner: Repository owner the token is scoped to
            repo_names: Repositories the token must cover (non-empty)
            auth_token: Caller's bearer credential

        Returns:
            Opaque installation token

        Raises:
            CredentialUnavailable: On any transport error, non-2xx response
                or a response without a token
            ValueError: If owner or repo_names are invalid
        """
        validate_identifier(owner, "owner")
        if not repo_names:
            raise ValueError("repo_names must not be empty")

        url = f"{self.base_url}{TOKEN_ENDPOINT}"
        headers = {
            "Authorization": f"Bearer {auth_token}",
            "Content-Type": "application/json",
        }
        payload = {
            "orgId": org_id,
            "userId": user_id,
            "taskId": task_id,
            "owner": owner,
            "repos": list(repo_names),
        }

        logger.info(f"Requesting installation token for {owner} ({', '.join(repo_names)})")

        try:
            response = requests.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            logger.error(f"Token request timed out after {self.timeout}s")
            raise CredentialUnavailable("token request timed out") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Token request failed: {type(e).__name__}")
            raise CredentialUnavailable(f"token request failed: {type(e).__name__}") from e

        if not 200 <= response.status_code < 300:
            logger.error(f"Token service returned HTTP {response.status_code}")
            logger.debug(f"Token service response body: {response.text[:500]}")
            raise CredentialUnavailable(f"token service returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise CredentialUnavailable("token service returned invalid JSON") from e

        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise CredentialUnavailable("token service response did not include a token")

        logger.info("Installation token acquired")
        return token
