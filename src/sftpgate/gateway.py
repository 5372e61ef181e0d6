from twisted.application import service

from sftpgate.frontends.auth import AccountFileChecker
from sftpgate.frontends.sftpd import SFTPServer
from sftpgate.sinks import SinkDispatcher, PersistenceSink, build_sinks
from sftpgate.util.keyutil import load_or_create_host_key
from sftpgate.util.log import PrefixingLogMixin, OPERATIONAL, BAD


class Gateway(service.MultiService, PrefixingLogMixin):
    """The whole gateway: an SFTP server whose completed uploads feed a
    SinkDispatcher."""

    def __init__(self, config, sinks=None, reactor=None):
        service.MultiService.__init__(self)
        PrefixingLogMixin.__init__(self, facility="sftpgate.gateway")
        self.config = config

        if sinks is None:
            sinks = build_sinks(config, reactor=reactor)
        for sink in sinks:
            if isinstance(sink, PersistenceSink):
                sink.ensure_directory()

        self.dispatcher = SinkDispatcher(sinks,
                                         max_upload_bytes=config.max_upload_bytes,
                                         timeout=config.sink_timeout,
                                         on_fatal=self._fatal,
                                         clock=reactor)
        self.dispatcher.setServiceParent(self)

        checker = AccountFileChecker.from_file(config.path(config.accounts_file))
        for account in checker.accounts.values():
            self.log("account %r: %s" % (account.username, ", ".join(account.methods())), level=OPERATIONAL)

        privkey = load_or_create_host_key(config.path(config.host_privkey_file))
        self.sftp = SFTPServer(checker, privkey, config.port,
                               self.dispatcher.upload_complete,
                               max_upload_bytes=config.max_upload_bytes,
                               banner=config.banner,
                               moduli_file=config.moduli_file)
        self.sftp.clients.when_authenticated(self._client_authenticated)
        self.sftp.setServiceParent(self)

    def _client_authenticated(self, client_session):
        self.log("new authenticated client: %s @ %s" % (client_session.username, client_session.address),
                 level=OPERATIONAL)

    def _fatal(self, f):
        self.log("fatal sink failure, tearing down the SFTP server: %s" % (f.getErrorMessage(),), level=BAD)
        return self.sftp.shutdown()
