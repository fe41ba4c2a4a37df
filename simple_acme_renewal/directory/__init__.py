# Copyright 2023 Jared Hendrickson
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Time-bounded cache of ACME directory endpoint URLs."""
import logging
import threading
import time

import requests
from acme import client
from acme import errors as acme_errors
from acme import messages

from .. import errors


# Constants and Variables
DIRECTORY_TTL = 10 * 60    # Seconds a fetched directory may be served from the cache
KNOWN_URLS = ('new-authz', 'new-cert', 'new-reg', 'revoke-cert')
logger = logging.getLogger(__name__)


class DirectoryUrls:
    """
    The endpoint URLs advertised by an ACME server's directory.
    """
    # pylint: disable=too-few-public-methods

    def __init__(
            self,
            new_authz: str = None,
            new_cert: str = None,
            new_reg: str = None,
            revoke_cert: str = None,
            raw: dict = None
    ):
        """
        Args:
            new_authz (str): The `new-authz` endpoint URL.
            new_cert (str): The `new-cert` endpoint URL.
            new_reg (str): The `new-reg` endpoint URL.
            revoke_cert (str): The `revoke-cert` endpoint URL.
            raw (dict): The complete directory object as returned by the server.
        """
        self.new_authz = new_authz
        self.new_cert = new_cert
        self.new_reg = new_reg
        self.revoke_cert = revoke_cert
        self.raw = raw if raw else {}

    @classmethod
    def from_json(cls, data: dict) -> 'DirectoryUrls':
        """Creates a DirectoryUrls object from a parsed directory body. Unknown URLs are left as `None`."""
        return cls(
            new_authz=data.get('new-authz'),
            new_cert=data.get('new-cert'),
            new_reg=data.get('new-reg'),
            revoke_cert=data.get('revoke-cert'),
            raw=dict(data)
        )

    def __eq__(self, other) -> bool:
        if not isinstance(other, DirectoryUrls):
            return NotImplemented
        return self.raw == other.raw

    def __repr__(self) -> str:
        return (
            f"DirectoryUrls(new_authz={self.new_authz!r}, new_cert={self.new_cert!r}, "
            f"new_reg={self.new_reg!r}, revoke_cert={self.revoke_cert!r})"
        )


class DirectoryCache:
    """
    Caches the directory of each ACME server for `ttl` seconds. Construct one per process and hand it to every
    object that needs directory URLs.
    """

    def __init__(
            self,
            ttl: int = DIRECTORY_TTL,
            net: client.ClientNetwork = None,
            verify_ssl: bool = True,
            user_agent: str = 'simple_acme_renewal/1.0.0',
            clock=time.monotonic
    ):
        """
        Args:
            ttl (int): The amount of time (in seconds) a fetched directory is considered fresh.
            net (acme.client.ClientNetwork): The network object used to GET the directory. One is created on first
                use if not provided.
            verify_ssl (bool): Verify the SSL certificate of the ACME server when fetching the directory.
            user_agent (str): The User-Agent header to send with directory requests.
            clock (callable): A function returning the current time in seconds.

        Examples:
            >>> cache = DirectoryCache()
            >>> cache.get("https://acme-v01.api.letsencrypt.org/directory").new_reg
            'https://acme-v01.api.letsencrypt.org/acme/new-reg'
        """
        self.ttl = ttl
        self.net = net
        self.verify_ssl = verify_ssl
        self.user_agent = user_agent
        self.clock = clock
        self._entries = {}
        self._lock = threading.Lock()

    def get(self, server_url: str) -> DirectoryUrls:
        """
        Returns the directory URLs for `server_url`, fetching them if nothing fresh is cached.

        Args:
            server_url (str): The ACME directory URL.

        Returns:
            simple_acme_renewal.directory.DirectoryUrls: The endpoint URLs of the server.

        Raises:
            simple_acme_renewal.errors.DirectoryFetchError: When the request fails or the response is not a JSON
                object.
        """
        # Each entry is a (value, fetched_at) tuple so both are always replaced together
        with self._lock:
            entry = self._entries.get(server_url)

        if entry and self.clock() - entry[1] < self.ttl:
            logger.debug("Using cached ACME directory for '%s'", server_url)
            return entry[0]

        urls = self._fetch(server_url)

        with self._lock:
            self._entries[server_url] = (urls, self.clock())

        return urls

    def invalidate(self, server_url: str = None) -> None:
        """
        Drops the cached directory for `server_url`, or every cached directory when no URL is given.

        Args:
            server_url (str): The ACME directory URL to forget.
        """
        with self._lock:
            if server_url is None:
                self._entries.clear()
            else:
                self._entries.pop(server_url, None)

    def _fetch(self, server_url: str) -> DirectoryUrls:
        """Requests and parses the directory body, logging any drift from the known URL set."""
        with self._lock:
            if self.net is None:
                self.net = client.ClientNetwork(None, user_agent=self.user_agent, verify_ssl=self.verify_ssl)

        try:
            data = self.net.get(server_url).json()
        except (requests.exceptions.RequestException, acme_errors.Error, messages.Error) as err:
            msg = f"Failed to fetch ACME directory at '{server_url}': {err}"
            raise errors.DirectoryFetchError(msg, stage='directory') from err
        except ValueError as err:
            msg = f"ACME directory at '{server_url}' did not return valid JSON."
            raise errors.DirectoryFetchError(msg, stage='directory') from err

        if not isinstance(data, dict):
            msg = f"ACME directory at '{server_url}' did not return a JSON object."
            raise errors.DirectoryFetchError(msg, stage='directory')

        # Unexpected or missing URLs are worth a warning but the known ones are still usable
        if len(data) != len(KNOWN_URLS):
            logger.warning(
                "ACME server at '%s' advertises %d URLs instead of %d, this client does not understand: %s",
                server_url, len(data), len(KNOWN_URLS), sorted(set(data) - set(KNOWN_URLS))
            )
        if not all(data.get(url) for url in KNOWN_URLS):
            logger.warning(
                "ACME server at '%s' is missing URLs this client may need: %s",
                server_url, [url for url in KNOWN_URLS if not data.get(url)]
            )

        return DirectoryUrls.from_json(data)
