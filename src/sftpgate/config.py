import os
from configparser import ConfigParser, NoSectionError, NoOptionError

from sftpgate.upload import DEFAULT_MAX_UPLOAD_BYTES


class ConfigError(Exception):
    pass


class Config(object):
    """A ConfigParser wrapper to support defaults when calling instance
    methods"""

    def __init__(self, values=None, sources=()):
        self.cp = ConfigParser(interpolation=None)
        # [http.form] option names become form field names
        self.cp.optionxform = str
        if values:
            self.cp.read_dict(values)
        self.cp.read(sources)

    def _getany(self, method, section, option, default):
        try:
            return method(section, option)
        except (NoSectionError, NoOptionError):
            return default
        except ValueError as e:
            raise ConfigError("[%s]%s: %s" % (section, option, e))

    def get(self, section, option, default=None):
        value = self._getany(self.cp.get, section, option, default)
        if value == "":
            return default
        return value

    def getint(self, section, option, default=None):
        return self._getany(self.cp.getint, section, option, default)

    def getfloat(self, section, option, default=None):
        return self._getany(self.cp.getfloat, section, option, default)

    def getboolean(self, section, option, default=None):
        return self._getany(self.cp.getboolean, section, option, default)

    def items(self, section):
        try:
            return self.cp.items(section)
        except NoSectionError:
            return []


class GatewayConfig(object):
    """Every option the gateway recognizes, with its default.

    Paths are resolved relative to 'basedir' (the directory holding the
    configuration file)."""

    port = "tcp:2222"
    banner = None
    host_privkey_file = "ssh_host_rsa_key"
    accounts_file = "accounts"
    max_upload_bytes = DEFAULT_MAX_UPLOAD_BYTES
    moduli_file = "/etc/ssh/moduli"

    sink_timeout = 60.0

    persist_directory = None

    smtp_sender = None
    smtp_recipient = None
    smtp_endpoint = None
    smtp_subject = None
    smtp_username = None
    smtp_password = None
    smtp_require_tls = False

    http_url = None
    http_form_values = ()
    http_fail_fast = False

    def __init__(self, basedir=".", **kwargs):
        self.basedir = basedir
        for name, value in kwargs.items():
            if not hasattr(GatewayConfig, name):
                raise ConfigError("unknown configuration option %r" % (name,))
            setattr(self, name, value)
        if self.max_upload_bytes <= 0:
            raise ConfigError("max_upload_bytes must be positive, not %r" % (self.max_upload_bytes,))
        if self.sink_timeout is not None and self.sink_timeout <= 0:
            self.sink_timeout = None

    @classmethod
    def from_file(cls, path):
        if not os.path.exists(path):
            raise ConfigError("configuration file %s does not exist" % (path,))
        return cls.from_config(Config(sources=[path]), basedir=os.path.dirname(os.path.abspath(path)))

    @classmethod
    def from_config(cls, c, basedir="."):
        d = cls.__dict__
        return cls(
            basedir=basedir,
            port=c.get("sftpd", "port", d["port"]),
            banner=c.get("sftpd", "banner"),
            host_privkey_file=c.get("sftpd", "host_privkey_file", d["host_privkey_file"]),
            accounts_file=c.get("sftpd", "accounts.file", d["accounts_file"]),
            max_upload_bytes=c.getint("sftpd", "max_upload_bytes", d["max_upload_bytes"]),
            moduli_file=c.get("sftpd", "moduli_file", d["moduli_file"]),
            sink_timeout=c.getfloat("sinks", "timeout", d["sink_timeout"]),
            persist_directory=c.get("persist", "directory"),
            smtp_sender=c.get("smtp", "sender"),
            smtp_recipient=c.get("smtp", "recipient"),
            smtp_endpoint=c.get("smtp", "endpoint"),
            smtp_subject=c.get("smtp", "subject"),
            smtp_username=c.get("smtp", "username"),
            smtp_password=c.get("smtp", "password"),
            smtp_require_tls=c.getboolean("smtp", "require_tls", False),
            http_url=c.get("http", "url"),
            http_form_values=tuple(c.items("http.form")),
            http_fail_fast=c.getboolean("http", "fail_fast", False),
        )

    def path(self, p):
        if p is None:
            return None
        return os.path.join(self.basedir, os.path.expanduser(p))

    @property
    def smtp_enabled(self):
        return bool(self.smtp_sender and self.smtp_recipient and self.smtp_endpoint)
