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
"""
simple_acme_renewal decides when ACME accounts and certificates need to be created. It keeps account keys and
registrations on disk in the layout used by certbot, reuses them on later runs, and only asks the ACME server for a
new certificate when the live certificate is missing, older than the renewal age, or a renewal is forced.
"""
import datetime
import logging
import os
import threading
import urllib.parse
import weakref

import validators

from . import accounts
from . import certificates
from . import challenges
from . import directory
from . import errors
from . import protocol
from . import tools


# Constants and Variables
DEFAULT_SERVER = 'https://acme-v02.api.letsencrypt.org/directory'
STAGING_SERVER = 'https://acme-staging-v02.api.letsencrypt.org/directory'
DEFAULT_CONFIG_DIR = '/etc/letsencrypt'
RENEWAL_AGE = datetime.timedelta(days=27)
__pdoc__ = {"tests": False}    # Excludes 'tests' submodule from documentation
logger = logging.getLogger(__name__)


class ACMERenewal:
    """
    Registers domain sets with an ACME server and keeps their live certificates current.
    """
    # Registrations of the same domain set are serialized across every instance in the process
    # pylint: disable=too-many-instance-attributes,too-many-arguments,too-many-locals
    _locks = weakref.WeakValueDictionary()
    _locks_guard = threading.Lock()

    def __init__(
            self,
            config_dir: str = DEFAULT_CONFIG_DIR,
            server: str = DEFAULT_SERVER,
            webroot_path=None,
            renewal_age: datetime.timedelta = RENEWAL_AGE,
            rsa_bit_length: int = tools.RSA_BIT_LENGTH,
            rsa_exponent: int = tools.RSA_EXPONENT,
            privkey_tpl: str = certificates.PRIVKEY_TPL,
            fullchain_tpl: str = certificates.FULLCHAIN_TPL,
            directory_cache: directory.DirectoryCache = None,
            key_provider: tools.KeyProvider = None,
            protocol_client: protocol.ProtocolClient = None,
            challenge_handler: challenges.ChallengeHandler = None,
            accept_terms=None,
            verify_ssl: bool = True,
            clock=None
    ):
        """
        Args:
            config_dir (str): The base directory for renewal configurations, accounts and live certificates.
            server (str): The default ACME directory URL.
            webroot_path (str|dict): The default webroot handed to the challenge handler. Either one path for every
                domain or a dictionary of paths keyed by domain.
            renewal_age (datetime.timedelta): Live certificates older than this are renewed.
            rsa_bit_length (int): The size of new account and domain keys.
            rsa_exponent (int): The public exponent of new account and domain keys.
            privkey_tpl (str): The live private key path relative to `config_dir`, `:hostname` is the primary domain.
            fullchain_tpl (str): The live certificate chain path relative to `config_dir`.
            directory_cache (simple_acme_renewal.directory.DirectoryCache): The process's directory cache.
            key_provider (simple_acme_renewal.tools.KeyProvider): Generates account and domain keys.
            protocol_client (simple_acme_renewal.protocol.ProtocolClient): Talks to the ACME server.
            challenge_handler (simple_acme_renewal.challenges.ChallengeHandler): Places challenge responses.
                Defaults to a `WebrootChallengeHandler`.
            accept_terms (callable): Called with the terms of service URL when an account is registered. Must return
                `True` to accept the terms.
            verify_ssl (bool): Verify the SSL certificate of the ACME server when making requests.
            clock (callable): A function returning the current time as an aware `datetime.datetime`.

        Examples:
            >>> import simple_acme_renewal
            >>> renewal = simple_acme_renewal.ACMERenewal(
            ...     config_dir="/etc/letsencrypt",
            ...     server=simple_acme_renewal.STAGING_SERVER,
            ...     webroot_path="/var/www/html",
            ...     accept_terms=lambda tos_url: True
            ... )
        """
        self.config_dir = config_dir
        self.server = server
        self.webroot_path = webroot_path
        self.renewal_age = renewal_age
        self.rsa_bit_length = rsa_bit_length
        self.rsa_exponent = rsa_exponent
        self.accept_terms = accept_terms
        self.directory_cache = directory_cache if directory_cache else directory.DirectoryCache(verify_ssl=verify_ssl)
        self.key_provider = key_provider if key_provider else tools.KeyProvider()
        self.protocol_client = protocol_client if protocol_client else protocol.ACMEProtocolClient(
            verify_ssl=verify_ssl
        )
        self.challenge_handler = challenge_handler if challenge_handler else challenges.WebrootChallengeHandler()
        self.fetcher = certificates.CertificateFetcher(config_dir, privkey_tpl=privkey_tpl, fullchain_tpl=fullchain_tpl)
        self.renewal_configs = certificates.RenewalConfigStore(config_dir)
        self.clock = clock if clock else lambda: datetime.datetime.now(datetime.timezone.utc)

    def register(
            self,
            domains: list,
            email: str = None,
            server: str = None,
            accounts_dir: str = None,
            force: bool = False,
            webroot_path=None,
            accept_terms=None
    ) -> certificates.CertificateBundle:
        """
        Makes sure `domains` have a current certificate, registering an account and requesting a certificate only
        when needed.

        Args:
            domains (list): The domain set. The first domain names the renewal configuration and live directory.
            email (str): The contact email used if a new account must be registered.
            server (str): The ACME directory URL. Defaults to the object's `server`.
            accounts_dir (str): The directory of account records. Defaults to
                `<config_dir>/accounts/<server hostname>/directory`.
            force (bool): Request a new certificate even if the live one is recent.
            webroot_path (str|dict): The webroot(s) for the challenge handler. Defaults to the object's
                `webroot_path`.
            accept_terms (callable): Overrides the object's `accept_terms` for this call.

        Returns:
            simple_acme_renewal.certificates.CertificateBundle: The live bundle, either the existing one or the newly
                issued one.

        Raises:
            simple_acme_renewal.errors.ACMERenewalError: When any step fails. The error's `stage` attribute names the
                step.

        Examples:
            >>> bundle = renewal.register(["example.com", "www.example.com"], email="admin@example.com")
            >>> bundle.issued_at
            datetime.datetime(2025, 3, 1, 12, 0, tzinfo=datetime.timezone.utc)
        """
        self.validate_domains(domains)
        if email is not None:
            self.validate_email(email)
        server = server if server else self.server
        accounts_dir = accounts_dir if accounts_dir else self.accounts_dir(server)
        accept_terms = accept_terms if accept_terms else self.accept_terms

        try:
            with self._lock(self.renewal_configs.path(domains)):
                return self._register(domains, email, server, accounts_dir, force, webroot_path, accept_terms)
        except errors.ACMERenewalError as err:
            err.domains = err.domains if err.domains else list(domains)
            raise

    def _register(self, domains, email, server, accounts_dir, force, webroot_path, accept_terms):
        """Runs the register state machine under the domain set's lock."""
        logger.debug("Resolving renewal configuration for %s", domains)
        renewal_config = self.renewal_configs.read(domains)

        # Directory URLs can rotate independently of the account, so resolve them on every call
        logger.debug("Resolving account for %s", domains)
        acme_urls = self.directory_cache.get(server)
        resolver = accounts.AccountResolver(
            accounts.AccountStore(accounts_dir, key_provider=self.key_provider),
            self.protocol_client,
            key_provider=self.key_provider,
            rsa_bit_length=self.rsa_bit_length,
            rsa_exponent=self.rsa_exponent
        )
        account = resolver.resolve(renewal_config, acme_urls, email=email, accept_terms=accept_terms)

        # Record a newly created account before anything else can end the call
        if renewal_config is None or renewal_config.account != account.account_id:
            self.renewal_configs.write(domains, account.account_id, server)

        logger.debug("Checking live certificate for %s", domains)
        bundle = self.fetcher.fetch(domains)

        if not self.needs_renewal(bundle, force=force):
            logger.warning(
                "Certificate for %s was issued %s ago, skipping renewal. Use force=True to renew anyway.",
                domains, bundle.age(self.clock())
            )
            return bundle

        logger.info("Requesting a new certificate for %s with account '%s'", domains, account.account_id)
        return self._issue(domains, account, acme_urls, server, webroot_path)

    def _issue(self, domains, account, acme_urls, server, webroot_path) -> certificates.CertificateBundle:
        """Obtains, stores and records a new certificate for `domains`."""
        keypair = self.key_provider.generate_keypair(self.rsa_bit_length, self.rsa_exponent)

        def set_challenge(domain, token, value):
            self._call_handler('set_challenge', domain, domains, webroot_path, token, value)

        def remove_challenge(domain, token):
            self._call_handler('remove_challenge', domain, domains, webroot_path, token)

        try:
            result = self.protocol_client.issue_certificate(
                domains=list(domains),
                account_private_key_pem=account.private_key_pem,
                domain_private_key_pem=keypair.private_key_pem,
                set_challenge=set_challenge,
                remove_challenge=remove_challenge,
                new_authz_url=acme_urls.new_authz,
                new_cert_url=acme_urls.new_cert,
                directory=acme_urls,
                registration=account.registration
            )
        except errors.ACMERenewalError as err:
            err.account_id = err.account_id if err.account_id else account.account_id
            err.stage = err.stage if err.stage else 'issuing'
            raise
        except Exception as err:  # pylint: disable=broad-except
            msg = f"Certificate issuance for {domains} failed: {err}"
            raise errors.ProtocolError(
                msg, cause=err, account_id=account.account_id, domains=list(domains), stage='issuing'
            ) from err

        fullchain_pem = result['fullchain_pem']
        fullchain_pem = fullchain_pem.encode() if isinstance(fullchain_pem, str) else fullchain_pem

        bundle = self.fetcher.store(domains, keypair.private_key_pem, fullchain_pem)
        self.renewal_configs.write(domains, account.account_id, server)
        return bundle

    def _call_handler(self, method: str, domain: str, domains: list, webroot_path, *args) -> None:
        """Forwards a challenge callback to the challenge handler, turning any failure into ChallengeHandlerError."""
        context = challenges.ChallengeContext(
            domain, webroot_path=self.webroot_for(domain, webroot_path), domains=list(domains)
        )

        try:
            done = getattr(self.challenge_handler, method)(context, *args)
        except errors.ChallengeHandlerError:
            raise
        except Exception as err:  # pylint: disable=broad-except
            msg = f"Challenge handler failed to {method.replace('_', ' ')} for '{domain}': {err}"
            raise errors.ChallengeHandlerError(msg, domains=list(domains), stage='issuing') from err

        if done is False:
            msg = f"Challenge handler reported failure to {method.replace('_', ' ')} for '{domain}'."
            raise errors.ChallengeHandlerError(msg, domains=list(domains), stage='issuing')

    def fetch(self, domains: list) -> certificates.CertificateBundle:
        """
        Reads the live certificate of a domain set without contacting the ACME server.

        Args:
            domains (list): The domain set. Only the first domain is used to locate the bundle.

        Returns:
            simple_acme_renewal.certificates.CertificateBundle: The live bundle, or `None` if it was never issued.

        Examples:
            >>> renewal.fetch(["example.com"]).fullchain_pem
            b'-----BEGIN CERTIFICATE-----\\nMIIEfzCCA2egAwI...'
        """
        self.validate_domains(domains)
        return self.fetcher.fetch(domains)

    def needs_renewal(self, bundle: certificates.CertificateBundle, force: bool = False) -> bool:
        """
        Decides whether a new certificate must be requested.

        Args:
            bundle (simple_acme_renewal.certificates.CertificateBundle): The live bundle, or `None`.
            force (bool): Whether renewal was explicitly requested.

        Returns:
            bool: `True` when there is no bundle, the bundle is older than `renewal_age`, or `force` is set.
        """
        if bundle is None:
            return True
        if bundle.age(self.clock()) > self.renewal_age:
            return True
        return bool(force)

    def accounts_dir(self, server: str) -> str:
        """Returns the default accounts directory for an ACME server."""
        hostname = urllib.parse.urlparse(server).hostname
        return os.path.join(self.config_dir, 'accounts', hostname, 'directory')

    def webroot_for(self, domain: str, webroot_path=None) -> str:
        """Returns the webroot of `domain`, preferring `webroot_path` over the object's default."""
        for candidate in (webroot_path, self.webroot_path):
            if isinstance(candidate, dict):
                candidate = candidate.get(domain)
            if candidate:
                return candidate
        return None

    @staticmethod
    def validate_domains(domains: list) -> None:
        """
        Checks that `domains` is a non-empty list of valid FQDNs.

        Raises:
            simple_acme_renewal.errors.InvalidDomain: When one or more domains are invalid.
        """
        if not isinstance(domains, (list, tuple)) or not domains:
            raise errors.InvalidDomain("Domains must be a non-empty list.")

        for domain in domains:
            if not isinstance(domain, str) or not validators.domain(ACMERenewal.strip_wildcard(domain)):
                msg = f"Invalid domain name '{domain}'. Domain name must adhere to RFC2181."
                raise errors.InvalidDomain(msg, domains=list(domains))

    @staticmethod
    def validate_email(email: str) -> None:
        """
        Checks that `email` is a valid email address.

        Raises:
            simple_acme_renewal.errors.InvalidEmail: When `email` is not a valid email address.
        """
        if not validators.email(email):
            raise errors.InvalidEmail(f"Value '{email}' is not a valid email address.")

    @staticmethod
    def strip_wildcard(domain: str) -> str:
        """Strips the wildcard portion of a domain (*.) if present."""
        return domain[2:] if domain.startswith("*.") else domain

    @classmethod
    def _lock(cls, path) -> threading.Lock:
        """Returns the process-wide lock of a renewal configuration path."""
        # Entries disappear once no call holds a reference to the lock
        with cls._locks_guard:
            lock = cls._locks.get(str(path))
            if lock is None:
                lock = threading.Lock()
                cls._locks[str(path)] = lock
            return lock
