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

import simple_acme_renewal

# Create a renewal object bound to a certbot-style config tree. In this example, the Let's Encrypt staging environment.
renewal = simple_acme_renewal.ACMERenewal(
    config_dir="/etc/letsencrypt",
    server=simple_acme_renewal.STAGING_SERVER,
    webroot_path="/var/www/html",  # HTTP-01 challenge files are written below this directory
    accept_terms=lambda tos_url: True,  # Accept the terms of service when a new account is registered
)

# Make sure our domains have a current certificate. An account is registered and a certificate requested only when
# needed, otherwise the existing live certificate is returned.
bundle = renewal.register(domains=["test.example.com"], email="user@example.com")

print(bundle.issued_at)
print(bundle.fullchain_pem.decode())
print(bundle.private_key_pem.decode())
