import os, stat

from twisted.trial import unittest

from sftpgate.util import keyutil


class HostKey(unittest.TestCase):
    def test_generate_once(self):
        fn = os.path.join(self.mktemp(), "ssh_host_rsa_key")
        key = keyutil.load_or_create_host_key(fn, bits=1024)
        self.assertFalse(key.isPublic())
        self.assertEqual(key.sshType(), b"ssh-rsa")
        self.assertEqual(stat.S_IMODE(os.stat(fn).st_mode), 0o600)

        again = keyutil.load_or_create_host_key(fn, bits=1024)
        self.assertEqual(again, key)

    def test_empty_file_is_replaced(self):
        fn = self.mktemp()
        open(fn, "wb").close()
        key = keyutil.load_or_create_host_key(fn, bits=1024)
        self.assertNotEqual(os.path.getsize(fn), 0)
        self.assertEqual(keyutil.load_or_create_host_key(fn), key)
