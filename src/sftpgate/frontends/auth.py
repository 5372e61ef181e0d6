import re

from zope.interface import implementer
from twisted.internet import defer
from twisted.cred import error, checkers, credentials
from twisted.conch import error as conch_error
from twisted.conch.ssh import keys

from sftpgate.util.log import PrefixingLogMixin, OPERATIONAL, UNUSUAL


class NeedAccountsError(Exception):
    """Name+password and name+key access both need a list of accounts; an
    accounts file with no usable entries would lock everybody out."""


class Account(object):
    """The credentials configured for one username. Either may be None,
    which disables that method for the user."""

    def __init__(self, username, password=None, pubkey=None):
        self.username = username
        self.password = password
        self.pubkey = pubkey

    def methods(self):
        m = []
        if self.pubkey is not None:
            m.append("publickey")
        if self.password is not None:
            m.append("password")
        return m


# The key types Conch can parse from an authorized_keys-style line. A line
# whose credential starts with one of these words is a key line, anything
# else is a password.
KEY_TYPES = (b"ssh-rsa", b"ssh-dss", b"ssh-ed25519", b"ssh-ed448",
             b"ecdsa-sha2-nistp256", b"ecdsa-sha2-nistp384", b"ecdsa-sha2-nistp521",
             b"sk-ssh-ed25519@openssh.com", b"sk-ecdsa-sha2-nistp256@openssh.com")

ACCOUNT_LINE = re.compile(br"^\s*(\S+)[ \t](.*)$")


def _is_key_line(rest):
    words = rest.split(None, 1)
    return bool(words) and words[0] in KEY_TYPES


def parse_accounts(lines):
    """Parse accounts-file lines into a dict mapping username (bytes) to
    Account.

    Each line is 'NAME PASSWORD' or 'NAME KEYTYPE BASE64 [COMMENT]'. The name
    is followed by exactly one space or tab; everything after it up to the
    end of the line is the password, including any other whitespace. A name
    may appear twice to enable both methods; a later line of the same kind
    replaces an earlier one."""
    accounts = {}
    for line in lines:
        if isinstance(line, str):
            line = line.encode("utf-8")
        line = line.rstrip(b"\r\n")
        if line.strip().startswith(b"#") or not line.strip():
            continue
        m = ACCOUNT_LINE.match(line)
        if not m or not m.group(2):
            raise ValueError("account line %r has no credential" % (line,))
        name, rest = m.groups()
        account = accounts.setdefault(name, Account(name))
        if _is_key_line(rest):
            try:
                account.pubkey = keys.Key.fromString(rest.strip())
            except (keys.BadKeyError, ValueError) as e:
                raise ValueError("bad public key for account %r: %s" % (name, e))
        else:
            account.password = rest
    return accounts


@implementer(checkers.ICredentialsChecker)
class AccountFileChecker(PrefixingLogMixin):
    credentialInterfaces = (credentials.IUsernamePassword,
                            credentials.ISSHPrivateKey)

    def __init__(self, accounts):
        PrefixingLogMixin.__init__(self, facility="sftpgate.auth")
        if not accounts:
            raise NeedAccountsError("must provide at least one account")
        self.accounts = accounts

    @classmethod
    def from_file(cls, accountfile):
        with open(accountfile, "rb") as f:
            return cls(parse_accounts(f))

    def requestAvatarId(self, creds):
        if credentials.ISSHPrivateKey.providedBy(creds):
            return self._checkKey(creds)
        elif credentials.IUsernamePassword.providedBy(creds):
            return self._checkPassword(creds)
        else:
            raise NotImplementedError()

    def _cbPasswordMatch(self, matched, username):
        if matched:
            self.log("%r has authenticated via password" % (username,), level=OPERATIONAL)
            return username
        self.log("password mismatch for %r" % (username,), level=UNUSUAL)
        raise error.UnauthorizedLogin()

    def _checkPassword(self, creds):
        """
        Determine whether the password in the given credentials matches the
        password in the account file.

        Returns a Deferred that fires with the username if the password matches
        or with an UnauthorizedLogin failure otherwise.
        """
        account = self.accounts.get(creds.username)
        if account is None or account.password is None:
            self.log("password login refused for %r: no such method" % (creds.username,), level=UNUSUAL)
            return defer.fail(error.UnauthorizedLogin())

        d = defer.maybeDeferred(creds.checkPassword, account.password)
        d.addCallback(self._cbPasswordMatch, creds.username)
        return d

    def _checkKey(self, creds):
        """
        Determine whether some key-based credentials correctly authenticates a
        user.

        Returns a Deferred that fires with the username if so, with a
        ValidPublicKey failure if the client is only asking whether the key
        would be acceptable, or with an UnauthorizedLogin failure otherwise.
        """
        account = self.accounts.get(creds.username)
        if account is None or account.pubkey is None:
            self.log("publickey login refused for %r: no such method" % (creds.username,), level=UNUSUAL)
            return defer.fail(error.UnauthorizedLogin())

        try:
            offered = keys.Key.fromString(creds.blob)
        except (keys.BadKeyError, ValueError):
            return defer.fail(error.UnauthorizedLogin("key unparseable"))

        allowed = account.pubkey
        if offered.sshType() != allowed.sshType():
            self.log("key type %r does not match %r" % (offered.sshType(), allowed.sshType()), level=UNUSUAL)
            return defer.fail(error.UnauthorizedLogin())

        if creds.blob != allowed.blob():
            self.log("key data did not match for %r" % (creds.username,), level=UNUSUAL)
            return defer.fail(error.UnauthorizedLogin())

        if creds.signature is None:
            # The client is only checking whether the public key would be
            # accepted before it signs anything.
            self.log("%r is checking the public key" % (creds.username,), level=OPERATIONAL)
            return defer.fail(conch_error.ValidPublicKey())

        if allowed.verify(creds.signature, creds.sigData):
            self.log("%r has authenticated via publickey" % (creds.username,), level=OPERATIONAL)
            return defer.succeed(creds.username)

        self.log("bad signature from %r" % (creds.username,), level=UNUSUAL)
        return defer.fail(error.UnauthorizedLogin())
