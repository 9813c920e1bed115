# venice/api/endpoints.py
"""
API endpoint definitions and URL construction for venice.

This module is the single place where request paths are turned into URLs.
"""

from typing import Any, Dict, Optional
from urllib.parse import quote, urljoin

from ..constants import API_VERSION


class APIEndpoints:
    """
    API endpoint definitions.

    Args:
        base_url (str): Base API URL including version
            (e.g., "https://api.venice.ai/api/v1")
        api_version (str, optional): API version override. Defaults to
            the version found in ``base_url``.

    Example:
        Construct URLs::

            endpoints = APIEndpoints("https://api.venice.ai/api/v1")

            print(endpoints.chat_completions)
            # https://api.venice.ai/api/v1/chat/completions

            print(endpoints.api_key("key/1"))
            # https://api.venice.ai/api/v1/api_keys/key%2F1
    """

    def __init__(self, base_url: str, api_version: Optional[str] = None):
        self.base_url = base_url.rstrip('/')

        if api_version:
            self.api_version = api_version
        elif '/v' in self.base_url:
            self.api_version = 'v' + self.base_url.rsplit('/v', 1)[-1]
        else:
            self.api_version = API_VERSION

        # Chat
        self.chat_completions = self._url("chat/completions")

        # Images
        self.image_generate = self._url("image/generate")
        self.image_styles = self._url("image/styles")
        self.image_upscale = self._url("image/upscale")

        # Models
        self.models_list = self._url("models")
        self.models_traits = self._url("models/traits")
        self.models_compatibility_mapping = self._url("models/compatibility_mapping")

        # API keys
        self.api_keys = self._url("api_keys")
        self.api_keys_rate_limits = self._url("api_keys/rate_limits")
        self.api_keys_web3 = self._url("api_keys/generate_web3_key")

    def api_key(self, key_id: str) -> str:
        """
        Get URL for a single API key.

        Args:
            key_id (str): API key identifier

        Returns:
            str: API key endpoint URL
        """
        return self._url(f"api_keys/{quote(key_id, safe='')}")

    def resolve(self, path: str) -> str:
        """
        Turn a request path into a full URL.

        Absolute URLs are returned unchanged.
        """
        if path.startswith(("http://", "https://")):
            return path
        return self._url(path.lstrip('/'))

    def _url(self, path: str) -> str:
        """
        Construct full URL from path.

        Args:
            path (str): API endpoint path

        Returns:
            str: Complete API URL
        """
        return urljoin(self.base_url + '/', path)

    def get_endpoint_info(self) -> Dict[str, Any]:
        """Get information about configured endpoints."""
        return {
            "base_url": self.base_url,
            "api_version": self.api_version,
            "chat_endpoints": [self.chat_completions],
            "image_endpoints": [self.image_generate, self.image_styles, self.image_upscale],
            "model_endpoints": [self.models_list, self.models_traits, self.models_compatibility_mapping],
            "api_key_endpoints": [self.api_keys, self.api_keys_rate_limits, self.api_keys_web3],
        }

    def __repr__(self) -> str:
        return f"APIEndpoints(base_url='{self.base_url}', version='{self.api_version}')"
