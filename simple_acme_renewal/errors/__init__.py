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
"""Custom exception classes for simple_acme_renewal."""


class ACMERenewalError(Exception):
    """Base class for every error raised by simple_acme_renewal."""
    def __init__(self, message: str, account_id: str = None, domains: list = None, stage: str = None) -> None:
        super().__init__(message)
        self.message = message
        self.account_id = account_id
        self.domains = domains
        self.stage = stage


class DirectoryFetchError(ACMERenewalError):
    """Error occurs when the ACME directory cannot be retrieved or is not a JSON object"""


class AccountCorrupt(ACMERenewalError):
    """Error occurs when one or more of an account's persisted files is missing or unreadable"""


class TermsNotAccepted(ACMERenewalError):
    """Error occurs when the ACME server's terms of service were declined"""


class ChallengeHandlerError(ACMERenewalError):
    """Error occurs when a challenge handler fails to place or remove validation material"""


class StorageError(ACMERenewalError):
    """Error occurs on an unexpected filesystem failure (anything other than a missing file)"""


class ProtocolError(ACMERenewalError):
    """Error occurs when the ACME protocol client fails. The original exception is kept on `cause`."""
    def __init__(self, message: str, cause: Exception = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.cause = cause


class InvalidDomain(ACMERenewalError):
    """Error occurs when a requested domain name is empty or not a valid FQDN"""


class InvalidEmail(ACMERenewalError):
    """Error occurs when an account email is required but missing or invalid"""
