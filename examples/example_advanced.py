# Copyright 2025 Jared Hendrickson
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

import sys

import simple_acme_renewal
from simple_acme_renewal import challenges, errors

force = True if "--force" in sys.argv else False


class PrintingChallengeHandler(challenges.ChallengeHandler):
    """Asks the operator to place each challenge response by hand."""

    def set_challenge(self, context, token, value):
        print("{domain}/.well-known/acme-challenge/{token} --> {value}".format(
            domain=context.domain, token=token, value=value
        ))
        # [ !!! ADD YOUR CODE TO PUBLISH THE CHALLENGE RESPONSE HERE; OR PUBLISH IT MANUALLY !!! ]
        return input("Continue once the challenge response is published [y/N]: ").lower() == "y"

    def remove_challenge(self, context, token):
        print("Challenge {token} for {domain} can be removed".format(domain=context.domain, token=token))
        return True


# Create a renewal object with a custom challenge handler and 4096-bit keys
renewal = simple_acme_renewal.ACMERenewal(
    config_dir="/tmp/letsencrypt",
    server=simple_acme_renewal.STAGING_SERVER,
    challenge_handler=PrintingChallengeHandler(),
    rsa_bit_length=4096,
)

# Register our domains. The terms of service are only shown when a new account is needed.
try:
    bundle = renewal.register(
        domains=["test.example.com", "test2.example.com"],
        email="user@example.com",
        force=force,
        accept_terms=lambda tos_url: input("Accept {tos_url}? [y/N]: ".format(tos_url=tos_url)).lower() == "y",
    )
except errors.ACMERenewalError as err:
    print("Failed to renew certificate for {domains} while {stage}: {msg}".format(
        domains=err.domains, stage=err.stage, msg=err.message
    ))
    sys.exit(1)

print(bundle.fullchain_pem.decode())

# Check the live certificate again without contacting the ACME server
print(renewal.fetch(["test.example.com", "test2.example.com"]).issued_at)
