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
"""Live certificate bundles and renewal configuration files."""
import datetime
import logging
import os
import pathlib

import configobj

from .. import errors


# Constants and Variables
PRIVKEY_TPL = 'live/:hostname/privkey.pem'
FULLCHAIN_TPL = 'live/:hostname/fullchain.pem'
logger = logging.getLogger(__name__)


class CertificateBundle:
    """
    A certificate chain and its private key as found in the live directory of a domain.
    """
    # pylint: disable=too-few-public-methods

    def __init__(self, private_key_pem: bytes, fullchain_pem: bytes, issued_at: datetime.datetime):
        """
        Args:
            private_key_pem (bytes): The PEM encoded private key (`privkey.pem`).
            fullchain_pem (bytes): The PEM encoded certificate chain (`fullchain.pem`).
            issued_at (datetime.datetime): The last modification time of the certificate chain, in UTC.
        """
        self.private_key_pem = private_key_pem
        self.fullchain_pem = fullchain_pem
        self.issued_at = issued_at

    def age(self, now: datetime.datetime = None) -> datetime.timedelta:
        """Returns how long ago the bundle was issued."""
        now = now if now else datetime.datetime.now(datetime.timezone.utc)
        return now - self.issued_at


class CertificateFetcher:
    """
    Reads and writes the live certificate bundle of the primary (first) domain of a domain set.
    """

    def __init__(self, config_dir: str, privkey_tpl: str = PRIVKEY_TPL, fullchain_tpl: str = FULLCHAIN_TPL):
        """
        Args:
            config_dir (str): The base configuration directory.
            privkey_tpl (str): The path of the private key relative to `config_dir`. `:hostname` is replaced with
                the primary domain.
            fullchain_tpl (str): The path of the certificate chain relative to `config_dir`. `:hostname` is replaced
                with the primary domain.
        """
        self.config_dir = pathlib.Path(config_dir)
        self.privkey_tpl = privkey_tpl
        self.fullchain_tpl = fullchain_tpl

    def paths(self, domains: list) -> tuple:
        """Returns the private key and certificate chain paths for a domain set."""
        hostname = domains[0]
        return (
            self.config_dir.joinpath(self.privkey_tpl.replace(':hostname', hostname).lstrip('/')),
            self.config_dir.joinpath(self.fullchain_tpl.replace(':hostname', hostname).lstrip('/'))
        )

    def fetch(self, domains: list) -> CertificateBundle:
        """
        Reads the live bundle of a domain set.

        Args:
            domains (list): The domain set. Only the first domain is used to locate the bundle.

        Returns:
            simple_acme_renewal.certificates.CertificateBundle: The live bundle, or `None` if it was never issued.

        Raises:
            simple_acme_renewal.errors.StorageError: When the bundle exists but cannot be read.
        """
        privkey_path, fullchain_path = self.paths(domains)

        try:
            private_key_pem = privkey_path.read_bytes()
            fullchain_pem = fullchain_path.read_bytes()
            # Stat the target of the link, not the link itself
            mtime = os.stat(fullchain_path).st_mtime
        except FileNotFoundError:
            return None
        except OSError as err:
            msg = f"Failed to read the live certificate for '{domains[0]}': {err}"
            raise errors.StorageError(msg, domains=domains, stage='checking_certificate') from err

        return CertificateBundle(
            private_key_pem=private_key_pem,
            fullchain_pem=fullchain_pem,
            issued_at=datetime.datetime.fromtimestamp(mtime, tz=datetime.timezone.utc)
        )

    def store(self, domains: list, private_key_pem: bytes, fullchain_pem: bytes) -> CertificateBundle:
        """
        Writes a newly issued bundle to the live location of a domain set.

        Args:
            domains (list): The domain set. Only the first domain is used to locate the bundle.
            private_key_pem (bytes): The PEM encoded private key.
            fullchain_pem (bytes): The PEM encoded certificate chain.

        Returns:
            simple_acme_renewal.certificates.CertificateBundle: The bundle as read back from disk.

        Raises:
            simple_acme_renewal.errors.StorageError: When the bundle cannot be written.
        """
        privkey_path, fullchain_path = self.paths(domains)

        try:
            for path in (privkey_path, fullchain_path):
                path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
            # Create the key file with restrictive permissions before any key material lands in it
            fd = os.open(privkey_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'wb') as privkey_file:
                privkey_file.write(private_key_pem)
            fullchain_path.write_bytes(fullchain_pem)
        except OSError as err:
            msg = f"Failed to write the live certificate for '{domains[0]}': {err}"
            raise errors.StorageError(msg, domains=domains, stage='issuing') from err

        logger.info("Stored new certificate for %s at '%s'", domains, fullchain_path)
        return self.fetch(domains)


class RenewalConfig:
    """
    The renewal configuration of a domain set: which account obtained its certificate and from where.
    """
    # pylint: disable=too-few-public-methods

    def __init__(self, account: str = None, server: str = None, domains: list = None, path: str = None):
        self.account = account
        self.server = server
        self.domains = domains if domains else []
        self.path = path


class RenewalConfigStore:
    """
    Reads and writes `<config_dir>/renewal/<primary domain>.conf` files.
    """

    def __init__(self, config_dir: str):
        self.renewal_dir = pathlib.Path(config_dir).joinpath('renewal')

    def path(self, domains: list) -> pathlib.Path:
        """Returns the renewal configuration path of a domain set."""
        return self.renewal_dir.joinpath(f"{domains[0]}.conf")

    def read(self, domains: list) -> RenewalConfig:
        """
        Reads the renewal configuration of a domain set.

        Args:
            domains (list): The domain set.

        Returns:
            simple_acme_renewal.certificates.RenewalConfig: The configuration, or `None` if the domain set was never
                registered.

        Raises:
            simple_acme_renewal.errors.StorageError: When the file exists but cannot be read or parsed.
        """
        path = self.path(domains)

        try:
            config = configobj.ConfigObj(str(path), encoding='utf-8', default_encoding='utf-8', file_error=True)
        except OSError as err:
            if not path.exists():
                return None
            msg = f"Failed to read renewal configuration '{path}': {err}"
            raise errors.StorageError(msg, domains=domains, stage='resolving_config') from err
        except configobj.ConfigObjError as err:
            msg = f"Renewal configuration '{path}' is not valid: {err}"
            raise errors.StorageError(msg, domains=domains, stage='resolving_config') from err

        # certbot keeps the account in the renewalparams section
        params = config.get('renewalparams')
        params = params if isinstance(params, dict) else {}
        domains_value = config.get('domains', [])

        return RenewalConfig(
            account=config.get('account') or params.get('account'),
            server=config.get('server') or params.get('server'),
            domains=[domains_value] if isinstance(domains_value, str) else list(domains_value),
            path=str(path)
        )

    def write(self, domains: list, account: str, server: str) -> RenewalConfig:
        """
        Records the account and server used for a domain set, keeping any other settings already in the file.

        Args:
            domains (list): The domain set.
            account (str): The account ID.
            server (str): The ACME directory URL.

        Returns:
            simple_acme_renewal.certificates.RenewalConfig: The written configuration.

        Raises:
            simple_acme_renewal.errors.StorageError: When the file cannot be written.
        """
        path = self.path(domains)

        try:
            self.renewal_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
            config = configobj.ConfigObj(str(path), encoding='utf-8', default_encoding='utf-8')
            config['account'] = account
            config['server'] = server
            config['domains'] = list(domains)
            config.write()
        except (OSError, configobj.ConfigObjError) as err:
            msg = f"Failed to write renewal configuration '{path}': {err}"
            raise errors.StorageError(msg, account_id=account, domains=domains, stage='issuing') from err

        return RenewalConfig(account=account, server=server, domains=list(domains), path=str(path))
