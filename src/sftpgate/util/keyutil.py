from cryptography.hazmat.primitives.asymmetric import rsa
from twisted.conch.ssh import keys
from twisted.python.filepath import FilePath

from sftpgate.util.log import msg, OPERATIONAL

HOST_KEY_BITS = 2048


def generate_host_key(bits=HOST_KEY_BITS):
    return keys.Key(rsa.generate_private_key(public_exponent=65537, key_size=bits))


def load_or_create_host_key(path, bits=HOST_KEY_BITS):
    """Return the private host key stored at 'path', generating and saving a
    new RSA key there first if the file is missing or empty."""
    fp = FilePath(path)
    if not fp.exists() or fp.getsize() == 0:
        msg("Generating a host key file %s..." % (fp.path,), facility="sftpgate.keys", level=OPERATIONAL)
        privkey = generate_host_key(bits)
        if not fp.parent().exists():
            fp.parent().makedirs()
        fp.setContent(privkey.toString("openssh") + b"\n")
        fp.chmod(0o600)
        msg("Generating a host key file %s...done" % (fp.path,), facility="sftpgate.keys", level=OPERATIONAL)
        return privkey
    return keys.Key.fromFile(fp.path)
