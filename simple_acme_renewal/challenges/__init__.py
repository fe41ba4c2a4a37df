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
"""Challenge handlers that place and remove domain validation material."""
import abc
import logging
import pathlib

from .. import errors


# Constants and Variables
WELL_KNOWN_PATH = '.well-known/acme-challenge'
logger = logging.getLogger(__name__)


class ChallengeContext:
    """What a challenge handler knows about the challenge it is handling."""
    # pylint: disable=too-few-public-methods

    def __init__(self, domain: str, webroot_path: str = None, domains: list = None):
        """
        Args:
            domain (str): The domain being validated.
            webroot_path (str): The webroot serving `domain`, if configured.
            domains (list): The domain set of the certificate request.
        """
        self.domain = domain
        self.webroot_path = webroot_path
        self.domains = domains if domains else [domain]


class ChallengeHandler(abc.ABC):
    """
    Base class for challenge handlers. Each method is called exactly once per token and returning from it signals
    that the validation material is in place (or removed). Raise or return `False` to signal a failure.
    """

    @abc.abstractmethod
    def set_challenge(self, context: ChallengeContext, token: str, value: str):
        """Makes `value` available for the ACME server to validate `token`."""

    @abc.abstractmethod
    def remove_challenge(self, context: ChallengeContext, token: str):
        """Removes the validation material of `token`."""


class WebrootChallengeHandler(ChallengeHandler):
    """
    Completes HTTP-01 challenges by writing the key authorization to
    `<webroot_path>/.well-known/acme-challenge/<token>`.
    """

    def set_challenge(self, context: ChallengeContext, token: str, value: str) -> bool:
        """
        Writes the challenge file.

        Raises:
            simple_acme_renewal.errors.ChallengeHandlerError: When no webroot is configured or the file cannot be
                written.
        """
        path = self.challenge_path(context, token)

        try:
            path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
            path.write_text(value, encoding='ascii')
        except OSError as err:
            msg = f"Failed to write challenge file '{path}' for '{context.domain}': {err}"
            raise errors.ChallengeHandlerError(msg, domains=context.domains, stage='issuing') from err

        logger.debug("Wrote challenge file '%s'", path)
        return True

    def remove_challenge(self, context: ChallengeContext, token: str) -> bool:
        """
        Deletes the challenge file if it exists.

        Raises:
            simple_acme_renewal.errors.ChallengeHandlerError: When no webroot is configured or the file cannot be
                deleted.
        """
        path = self.challenge_path(context, token)

        try:
            path.unlink(missing_ok=True)
        except OSError as err:
            msg = f"Failed to remove challenge file '{path}' for '{context.domain}': {err}"
            raise errors.ChallengeHandlerError(msg, domains=context.domains, stage='issuing') from err

        return True

    @staticmethod
    def challenge_path(context: ChallengeContext, token: str) -> pathlib.Path:
        """Returns the path the challenge file for `token` is written to."""
        if not context.webroot_path:
            msg = f"No webroot path configured for '{context.domain}'."
            raise errors.ChallengeHandlerError(msg, domains=context.domains, stage='issuing')

        # Tokens are base64url, anything else could escape the webroot
        if not token or '/' in token or token in ('.', '..'):
            msg = f"Refusing to write challenge file for invalid token '{token}'."
            raise errors.ChallengeHandlerError(msg, domains=context.domains, stage='issuing')

        return pathlib.Path(context.webroot_path).joinpath(WELL_KNOWN_PATH, token)
