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
"""Tests the challenge handlers of the simple_acme_renewal package."""
import pathlib
import tempfile
import unittest

from simple_acme_renewal import challenges
from simple_acme_renewal import errors

TOKEN = "evaGxfADs6pSRb2LAv9IZf17Dt3juxGJ-PCt92wr-oA"


class TestWebrootChallengeHandler(unittest.TestCase):
    """Tests the WebrootChallengeHandler class."""

    def setUp(self):
        """Creates an empty webroot for each test."""
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.handler = challenges.WebrootChallengeHandler()
        self.context = challenges.ChallengeContext("example.com", webroot_path=self.tmp.name)

    def test_set_and_remove(self):
        """Checks that the key authorization is served from the well-known path and removed afterwards."""
        path = pathlib.Path(self.tmp.name, ".well-known", "acme-challenge", TOKEN)

        self.assertTrue(self.handler.set_challenge(self.context, path.name, "evaGxfADs6pSRb2LAv9IZf17.key-auth"))
        self.assertEqual(path.read_text(encoding="ascii"), "evaGxfADs6pSRb2LAv9IZf17.key-auth")

        self.assertTrue(self.handler.remove_challenge(self.context, path.name))
        self.assertFalse(path.exists())

    def test_remove_missing_file(self):
        """Checks that removing a challenge that was never written is not an error."""
        self.assertTrue(self.handler.remove_challenge(self.context, "never-written"))

    def test_no_webroot(self):
        """Checks that a domain without a webroot cannot be validated."""
        context = challenges.ChallengeContext("example.com")

        with self.assertRaises(errors.ChallengeHandlerError) as ctx:
            self.handler.set_challenge(context, "token", "value")
        self.assertEqual(ctx.exception.domains, ["example.com"])

    def test_token_cannot_escape_webroot(self):
        """Checks that tokens containing path separators are refused."""
        for token in ("../../etc/passwd", "..", ""):
            with self.subTest(token=token):
                with self.assertRaises(errors.ChallengeHandlerError):
                    self.handler.set_challenge(self.context, token, "value")

    def test_unwritable_webroot(self):
        """Checks that write failures are reported as ChallengeHandlerError."""
        webroot = pathlib.Path(self.tmp.name, "file")
        webroot.write_text("not a directory", encoding="utf-8")
        context = challenges.ChallengeContext("example.com", webroot_path=str(webroot))

        with self.assertRaises(errors.ChallengeHandlerError):
            self.handler.set_challenge(context, "token", "value")


if __name__ == "__main__":
    unittest.main()
