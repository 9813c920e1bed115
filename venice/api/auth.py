# venice/api/auth.py
"""
Authentication handling for venice API requests.

This module builds the authentication headers attached to every request the
:class:`~venice.api.executor.Executor` sends.
"""

import logging
import os
from typing import Dict, Optional

from ..constants import ENV_VARS
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

AUTH_METHODS = ("bearer", "api_key")


class APIAuth:
    """
    API authentication handler.

    Args:
        api_key (str, optional): API authentication key. If not provided,
            will attempt to load from environment variable VENICE_API_KEY.
        auth_method (str): Authentication method. Options:
            - "bearer": ``Authorization: Bearer <key>`` (default)
            - "api_key": API key in the ``X-API-Key`` header

    Attributes:
        api_key (str): Current API key
        auth_method (str): Active authentication method

    Example:
        Basic API key authentication::

            auth = APIAuth("your-api-key")
            headers = auth.get_auth_headers()

            response = requests.get(url, headers=headers)

    Note:
        The key is never logged; :meth:`masked_key` is used wherever it
        needs to be shown.
    """

    def __init__(self, api_key: Optional[str] = None, auth_method: str = "bearer"):
        if auth_method not in AUTH_METHODS:
            raise ConfigurationError(
                f"Invalid auth method: {auth_method}",
                config_key="auth_method",
                invalid_value=auth_method,
                valid_values=list(AUTH_METHODS)
            )

        self.api_key = api_key or os.getenv(ENV_VARS["API_KEY"])
        self.auth_method = auth_method

        logger.debug(f"Initialized API auth with method: {auth_method}")

    @property
    def is_authenticated(self) -> bool:
        """Whether an API key is configured."""
        return bool(self.api_key)

    def get_auth_headers(self) -> Dict[str, str]:
        """
        Get authentication headers for API requests.

        Returns:
            Dict[str, str]: Headers to merge into the request. Empty when no
            key is configured; the service then answers 401.
        """
        if not self.is_authenticated:
            logger.warning("No API key configured, sending unauthenticated request")
            return {}

        if self.auth_method == "api_key":
            return {"X-API-Key": self.api_key}
        return {"Authorization": f"Bearer {self.api_key}"}

    def set_api_key(self, api_key: Optional[str]):
        """Replace the API key."""
        self.api_key = api_key
        logger.info("API key updated")

    def masked_key(self) -> str:
        """API key with all but the last four characters hidden."""
        if not self.api_key:
            return "<none>"
        if len(self.api_key) <= 4:
            return "****"
        return f"****{self.api_key[-4:]}"

    def __repr__(self) -> str:
        return f"APIAuth(method={self.auth_method}, key={self.masked_key()})"
