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
"""On-disk ACME account records and the logic that picks or creates the account to use."""
import datetime
import json
import logging
import pathlib
import socket

import josepy as jose

from .. import errors
from .. import tools


# Constants and Variables
ACCOUNT_FILES = ('meta.json', 'private_key.json', 'regr.json')
logger = logging.getLogger(__name__)


class AccountRecord:
    """
    A single ACME account as persisted under `<accounts_dir>/<account_id>/`.
    """
    # pylint: disable=too-few-public-methods,too-many-arguments

    def __init__(
            self,
            account_id: str,
            meta: dict,
            private_key: dict,
            registration: dict,
            private_key_pem: bytes = None,
            public_key_pem: bytes = None
    ):
        """
        Args:
            account_id (str): The account ID, the fingerprint of the account's public key PEM.
            meta (dict): The `creation_host` and `creation_dt` of the account.
            private_key (dict): The account private key in JWK form.
            registration (dict): The registration resource returned by the ACME server. The server's registration
                body is found under the `body` key.
            private_key_pem (bytes): The PEM encoded account private key.
            public_key_pem (bytes): The PEM encoded account public key.
        """
        self.account_id = account_id
        self.meta = meta
        self.private_key = private_key
        self.registration = registration
        self.private_key_pem = private_key_pem
        self.public_key_pem = public_key_pem

    @property
    def email(self) -> str:
        """The first `mailto:` contact of the registration, if any."""
        body = self.registration.get('body')
        for contact in (body.get('contact') or [] if isinstance(body, dict) else []):
            if contact.startswith('mailto:'):
                return contact.replace('mailto:', '', 1)
        return None


class AccountStore:
    """
    Reads and writes account records below a single accounts directory.
    """

    def __init__(self, accounts_dir: str, key_provider: tools.KeyProvider = None):
        """
        Args:
            accounts_dir (str): The directory holding one sub-directory per account ID.
            key_provider (simple_acme_renewal.tools.KeyProvider): Used to derive the PEM keys of loaded accounts.
        """
        self.accounts_dir = pathlib.Path(accounts_dir)
        self.key_provider = key_provider if key_provider else tools.KeyProvider()

    def account_dir(self, account_id: str) -> pathlib.Path:
        """Returns the directory path of an account."""
        return self.accounts_dir.joinpath(account_id)

    def load(self, account_id: str) -> AccountRecord:
        """
        Loads an account. All three account files must be present and valid, otherwise nothing is returned.

        Args:
            account_id (str): The ID of the account to load.

        Returns:
            simple_acme_renewal.accounts.AccountRecord: The loaded account.

        Raises:
            simple_acme_renewal.errors.AccountCorrupt: When any of `meta.json`, `private_key.json` or `regr.json` is
                missing, unreadable, not a JSON object, or when the private key cannot be parsed.
        """
        files = {}
        failures = []

        # Read every file before judging so the error names all the broken parts
        for filename in ACCOUNT_FILES:
            try:
                with open(self.account_dir(account_id).joinpath(filename), 'r', encoding='utf-8') as account_file:
                    data = json.load(account_file)
            except (OSError, ValueError) as err:
                failures.append(f"{filename} ({err})")
                continue

            if not isinstance(data, dict):
                failures.append(f"{filename} (not a JSON object)")
                continue
            files[filename] = data

        if 'regr.json' in files and 'body' not in files['regr.json']:
            failures.append("regr.json (no registration body)")

        if failures:
            msg = f"Account '{account_id}' is corrupt: {', '.join(failures)}"
            raise errors.AccountCorrupt(msg, account_id=account_id, stage='resolving_account')

        try:
            private_key_pem, public_key_pem = self.key_provider.parse_account_private_key(files['private_key.json'])
        except (jose.errors.Error, KeyError, ValueError, TypeError) as err:
            msg = f"Account '{account_id}' is corrupt: private_key.json ({err})"
            raise errors.AccountCorrupt(msg, account_id=account_id, stage='resolving_account') from err

        return AccountRecord(
            account_id=account_id,
            meta=files['meta.json'],
            private_key=files['private_key.json'],
            registration=files['regr.json'],
            private_key_pem=private_key_pem,
            public_key_pem=public_key_pem
        )

    def try_load(self, account_id: str) -> AccountRecord:
        """
        Loads an account, returning `None` instead of raising when it is corrupt or does not exist.

        Args:
            account_id (str): The ID of the account to load.

        Returns:
            simple_acme_renewal.accounts.AccountRecord: The loaded account, or `None`.
        """
        try:
            return self.load(account_id)
        except errors.AccountCorrupt as err:
            logger.warning("%s. A new account will be created instead.", err.message)
            return None

    def save(self, record: AccountRecord) -> None:
        """
        Writes the three files of an account. The account directory is created if needed.

        Args:
            record (simple_acme_renewal.accounts.AccountRecord): The account to write.

        Raises:
            simple_acme_renewal.errors.StorageError: When the account directory or any file cannot be written.
        """
        account_dir = self.account_dir(record.account_id)
        contents = {
            'meta.json': record.meta,
            'private_key.json': record.private_key,
            'regr.json': record.registration
        }

        try:
            account_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            for filename, data in contents.items():
                with open(account_dir.joinpath(filename), 'w', encoding='utf-8') as account_file:
                    json.dump(data, account_file)
        except OSError as err:
            msg = f"Failed to write account '{record.account_id}' to '{account_dir}': {err}"
            raise errors.StorageError(msg, account_id=record.account_id, stage='resolving_account') from err


class AccountResolver:
    """
    Returns the account to use for a request, registering a new one when no usable account exists.
    """

    def __init__(
            self,
            store: AccountStore,
            protocol_client,
            key_provider: tools.KeyProvider = None,
            rsa_bit_length: int = tools.RSA_BIT_LENGTH,
            rsa_exponent: int = tools.RSA_EXPONENT
    ):
        """
        Args:
            store (simple_acme_renewal.accounts.AccountStore): The store to load and save accounts with.
            protocol_client (simple_acme_renewal.protocol.ProtocolClient): Registers new accounts.
            key_provider (simple_acme_renewal.tools.KeyProvider): Generates new account keys.
            rsa_bit_length (int): The size of new account keys.
            rsa_exponent (int): The public exponent of new account keys.
        """
        self.store = store
        self.protocol_client = protocol_client
        self.key_provider = key_provider if key_provider else store.key_provider
        self.rsa_bit_length = rsa_bit_length
        self.rsa_exponent = rsa_exponent

    def resolve(self, renewal_config, acme_urls, email: str = None, accept_terms=None) -> AccountRecord:
        """
        Returns the account named by `renewal_config`, or a newly registered account when there is none or it
        cannot be loaded.

        Args:
            renewal_config (simple_acme_renewal.certificates.RenewalConfig): The renewal configuration of the
                domains, or `None` when they were never registered.
            acme_urls (simple_acme_renewal.directory.DirectoryUrls): The directory of the ACME server.
            email (str): The email to register a new account with.
            accept_terms (callable): Called with the terms of service URL when a new account is registered. Must
                return `True` to accept the terms.

        Returns:
            simple_acme_renewal.accounts.AccountRecord: A usable account.
        """
        account_id = renewal_config.account if renewal_config else None
        account_id = account_id if account_id else self.find_by_email(email)

        if account_id:
            record = self.store.try_load(account_id)
            if record:
                return record

        return self.create_account(acme_urls, email=email, accept_terms=accept_terms)

    def find_by_email(self, email: str) -> str:  # pylint: disable=unused-argument
        """
        Looks up an existing account ID by email. Accounts are stored by key fingerprint only, so there is no
        index to search and this always returns `None`.
        """
        return None

    def create_account(self, acme_urls, email: str = None, accept_terms=None) -> AccountRecord:
        """
        Generates a new account key, registers it with the ACME server and saves the account. Nothing is written
        to disk unless registration succeeds.

        Args:
            acme_urls (simple_acme_renewal.directory.DirectoryUrls): The directory of the ACME server.
            email (str): The email to register the account with.
            accept_terms (callable): Called with the terms of service URL. Must return `True` to accept the terms.

        Returns:
            simple_acme_renewal.accounts.AccountRecord: The new account.

        Raises:
            simple_acme_renewal.errors.TermsNotAccepted: When the terms of service were declined.
            simple_acme_renewal.errors.ProtocolError: When registration fails.
        """
        keypair = self.key_provider.generate_keypair(self.rsa_bit_length, self.rsa_exponent)

        try:
            registration = self.protocol_client.register_account(
                email=email,
                new_reg_url=acme_urls.new_reg,
                accept_terms=accept_terms,
                account_private_key_pem=keypair.private_key_pem,
                directory=acme_urls
            )
        except errors.ACMERenewalError:
            raise
        except Exception as err:  # pylint: disable=broad-except
            msg = f"Account registration for '{email}' failed: {err}"
            raise errors.ProtocolError(msg, cause=err, stage='resolving_account') from err

        # Some servers hand back the registration as a JSON string
        if isinstance(registration, (str, bytes)):
            try:
                registration = json.loads(registration)
            except ValueError:
                pass
        if not isinstance(registration, dict) or 'body' not in registration:
            registration = {'body': registration}

        record = AccountRecord(
            account_id=keypair.public_key_fingerprint,
            meta={
                'creation_host': socket.gethostname(),
                'creation_dt': datetime.datetime.now(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
            },
            private_key=keypair.private_key_jwk,
            registration=registration,
            private_key_pem=keypair.private_key_pem,
            public_key_pem=keypair.public_key_pem
        )
        self.store.save(record)
        logger.info("Created ACME account '%s' for '%s'", record.account_id, email)

        return record
