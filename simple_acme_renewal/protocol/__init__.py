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
"""The ACME protocol boundary: account registration and certificate issuance."""
import abc
import datetime
import json
import logging

import josepy as jose
import requests
from acme import challenges
from acme import client
from acme import crypto_util
from acme import errors as acme_errors
from acme import messages
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.serialization import load_pem_private_key

from .. import errors


# Constants and Variables
USER_AGENT = 'simple_acme_renewal/1.0.0'
ACME_ERRORS = (acme_errors.Error, messages.Error, requests.exceptions.RequestException)
logger = logging.getLogger(__name__)


class ProtocolClient(abc.ABC):
    """
    Base class for objects that speak the ACME protocol on behalf of the renewal orchestrator.
    """

    @abc.abstractmethod
    def register_account(
            self,
            email: str,
            new_reg_url: str,
            accept_terms,
            account_private_key_pem: bytes,
            directory=None
    ) -> dict:
        """
        Registers a new account key with the ACME server.

        Args:
            email (str): The contact email of the account.
            new_reg_url (str): The registration endpoint URL.
            accept_terms (callable): Called with the terms of service URL, returns `True` to accept them.
            account_private_key_pem (bytes): The PEM encoded account key.
            directory (simple_acme_renewal.directory.DirectoryUrls): The complete server directory.

        Returns:
            dict: The registration resource. The server's registration body is found under the `body` key.

        Raises:
            simple_acme_renewal.errors.TermsNotAccepted: When `accept_terms` declines.
        """

    @abc.abstractmethod
    def issue_certificate(
            self,
            domains: list,
            account_private_key_pem: bytes,
            domain_private_key_pem: bytes,
            set_challenge,
            remove_challenge,
            new_authz_url: str,
            new_cert_url: str,
            directory=None,
            registration: dict = None
    ) -> dict:
        """
        Obtains a certificate for `domains`. `set_challenge(domain, token, value)` must return before the
        authorization is answered, `remove_challenge(domain, token)` is called once the authorization is done with.

        Returns:
            dict: The result of issuance. The PEM encoded certificate chain is found under the `fullchain_pem` key.
        """


class ACMEProtocolClient(ProtocolClient):
    """
    An ACME v2 protocol client using the HTTP-01 challenge.
    """

    def __init__(
            self,
            server: str = None,
            verify_ssl: bool = True,
            user_agent: str = USER_AGENT,
            timeout: int = 90
    ):
        """
        Args:
            server (str): The ACME directory URL. Only used when the caller does not provide the directory itself.
            verify_ssl (bool): Verify the SSL certificate of the ACME server when making requests.
            user_agent (str): The User-Agent header to send with requests.
            timeout (int): The amount of time (in seconds) to wait for the ACME server to finalize an order.
        """
        self.server = server
        self.verify_ssl = verify_ssl
        self.user_agent = user_agent
        self.timeout = timeout

    def register_account(self, email, new_reg_url, accept_terms, account_private_key_pem, directory=None) -> dict:
        """
        Registers a new account key with the ACME server, asking `accept_terms` about the server's terms of
        service first.

        Raises:
            simple_acme_renewal.errors.TermsNotAccepted: When `accept_terms` is missing or declines the terms.
            simple_acme_renewal.errors.ProtocolError: When the ACME server rejects the registration.
        """
        try:
            acme_client = self._client(account_private_key_pem, directory)
            terms_of_service = acme_client.directory.meta.terms_of_service

            # Never register without an explicit acceptance of the terms
            if accept_terms is None or not accept_terms(terms_of_service):
                msg = f"Terms of service at '{terms_of_service}' were not accepted."
                raise errors.TermsNotAccepted(msg, stage='resolving_account')

            registration = messages.NewRegistration.from_data(email=email, terms_of_service_agreed=True)
            regr = acme_client.new_account(registration)
        except ACME_ERRORS as err:
            msg = f"ACME server at '{new_reg_url}' rejected the registration for '{email}': {err}"
            raise errors.ProtocolError(msg, cause=err, stage='resolving_account') from err

        logger.debug("Registered ACME account at '%s'", regr.uri)
        return json.loads(regr.json_dumps())

    def issue_certificate(
            self,
            domains,
            account_private_key_pem,
            domain_private_key_pem,
            set_challenge,
            remove_challenge,
            new_authz_url,
            new_cert_url,
            directory=None,
            registration=None
    ) -> dict:
        """
        Places an order for `domains`, completes one HTTP-01 challenge per authorization and finalizes the order.
        Every challenge that was set is removed again, whether or not issuance succeeded.

        Raises:
            simple_acme_renewal.errors.ProtocolError: When the ACME server fails or does not offer HTTP-01.
        """
        # pylint: disable=too-many-arguments,too-many-locals
        placed = []

        try:
            acme_client = self._client(account_private_key_pem, directory)
            self._query_account(acme_client, registration)
            order = acme_client.new_order(crypto_util.make_csr(domain_private_key_pem, domains))

            # Place each challenge before answering it, one authorization at a time
            for authz in order.authorizations:
                domain = authz.body.identifier.value
                challb = self._http01_challenge(authz, domain)
                response, validation = challb.response_and_validation(acme_client.net.key)
                token = challb.chall.encode('token')

                set_challenge(domain, token, validation)
                placed.append((domain, token))
                acme_client.answer_challenge(challb, response)

            deadline = datetime.datetime.now() + datetime.timedelta(seconds=self.timeout)
            final_order = acme_client.poll_and_finalize(order, deadline=deadline)
        except ACME_ERRORS as err:
            self._remove_challenges(placed, remove_challenge, unwinding=True)
            msg = f"ACME server failed to issue a certificate for {domains}: {err}"
            raise errors.ProtocolError(msg, cause=err, domains=domains, stage='issuing') from err
        except Exception:  # pylint: disable=broad-except
            self._remove_challenges(placed, remove_challenge, unwinding=True)
            raise

        self._remove_challenges(placed, remove_challenge)
        return {'fullchain_pem': final_order.fullchain_pem.encode(), 'uri': final_order.uri}

    @staticmethod
    def _remove_challenges(placed: list, remove_challenge, unwinding: bool = False) -> None:
        """
        Removes every placed challenge, even when some removals fail. While unwinding from another error the
        failures are only logged, otherwise the first failure is raised once every removal was attempted.
        """
        first_error = None

        for domain, token in placed:
            try:
                remove_challenge(domain, token)
            except Exception as err:  # pylint: disable=broad-except
                logger.warning("Failed to remove challenge '%s' for '%s': %s", token, domain, err)
                first_error = first_error if first_error else err

        if first_error and not unwinding:
            raise first_error

    def _client(self, account_private_key_pem: bytes, directory=None) -> client.ClientV2:
        """Creates an ACME v2 client signing with the given account key."""
        key = load_pem_private_key(account_private_key_pem, password=None, backend=default_backend())
        net = client.ClientNetwork(jose.JWKRSA(key=key), user_agent=self.user_agent, verify_ssl=self.verify_ssl)

        if directory is not None and directory.raw:
            directory_obj = messages.Directory.from_json(dict(directory.raw))
        elif self.server:
            directory_obj = client.ClientV2.get_directory(self.server, net)
        else:
            raise errors.ProtocolError("No ACME directory available to the protocol client.")

        return client.ClientV2(directory_obj, net=net)

    @staticmethod
    def _query_account(acme_client: client.ClientV2, registration: dict = None) -> None:
        """Binds the client to the account registered for its key."""
        if registration and registration.get('uri'):
            regr = messages.RegistrationResource.from_json(registration)
        else:
            # The server reports an existing account for this key as a conflict pointing at its URI
            try:
                acme_client.new_account(messages.NewRegistration.from_data(only_return_existing=True))
                return
            except acme_errors.ConflictError as err:
                regr = messages.RegistrationResource(uri=err.location, body=messages.Registration())

        acme_client.query_registration(regr)

    @staticmethod
    def _http01_challenge(authz, domain: str) -> messages.ChallengeBody:
        """Returns the HTTP-01 challenge of an authorization."""
        for challb in authz.body.challenges:
            if isinstance(challb.chall, challenges.HTTP01):
                return challb

        raise errors.ProtocolError(f"ACME server does not offer the HTTP-01 challenge for '{domain}'.")
