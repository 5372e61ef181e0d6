
import stat
from time import time

from zope.interface import implementer
from twisted.application import service, strports
from twisted.conch.avatar import ConchUser
from twisted.conch.error import ConchError
from twisted.conch.interfaces import ISFTPServer, ISFTPFile, IConchUser
from twisted.conch.openssh_compat import primes
from twisted.conch.ssh import factory, session, userauth, connection
from twisted.conch.ssh.common import NS, getNS
from twisted.conch.ssh.filetransfer import FileTransferServer, SFTPError, \
     FX_NO_SUCH_FILE, FX_OP_UNSUPPORTED, FX_FAILURE
from twisted.conch.ssh.transport import SSHServerTransport, DISCONNECT_BY_APPLICATION
from twisted.cred import portal
from twisted.internet import defer
from twisted.python.failure import Failure

from sftpgate.upload import UploadReassembler, UploadComplete, UploadTooLarge, \
     UploadNotOpen, DEFAULT_MAX_UPLOAD_BYTES
from sftpgate.util.observer import ObserverList
from sftpgate.util.log import NOISY, OPERATIONAL, UNUSUAL, WEIRD, \
     msg as logmsg, PrefixingLogMixin

noisy = True

# The suffix WinSCP appends while a transfer is in progress; it renames the
# file to drop it once the upload is complete.
FILEPART_SUFFIX = ".filepart"

# Channel requests that end the connection. Anything else that is not the
# sftp subsystem (for example "env", which OpenSSH clients send first) is
# just refused.
DISALLOWED_REQUESTS = (b"shell", b"exec", b"pty-req", b"window-change", b"x11-req",
                       b"signal", b"auth-agent-req@openssh.com", b"subsystem")


def _utf8(x):
    if isinstance(x, str):
        return x.encode('utf-8')
    if isinstance(x, bytes):
        return x
    return repr(x).encode('utf-8')


def _convert_error(res, request):
    """If res is not a Failure, return it, otherwise reraise the appropriate
    SFTPError."""

    if not isinstance(res, Failure):
        logged_res = res
        if isinstance(res, bytes): logged_res = "<data of length %r>" % (len(res),)
        logmsg("SUCCESS %r %r" % (request, logged_res,), facility="sftpgate.sftp", level=NOISY)
        return res

    err = res
    logmsg("RAISE %r %r" % (request, err.value), facility="sftpgate.sftp", level=OPERATIONAL)

    if err.check(SFTPError):
        raise err.value
    if err.check(UploadTooLarge) or err.check(UploadNotOpen):
        raise SFTPError(FX_FAILURE, str(err.value))
    if err.check(NotImplementedError):
        raise SFTPError(FX_OP_UNSUPPORTED, str(err.value))

    raise SFTPError(FX_FAILURE, str(err.value))


def _unsupported(request):
    def _raise(): raise SFTPError(FX_OP_UNSUPPORTED, request)
    return defer.execute(_raise)


def normalize_filename(filename):
    """Map a path or handle name from the client to the flat upload name:
    outer slashes and a trailing in-progress suffix are removed."""
    if isinstance(filename, bytes):
        try:
            filename = filename.decode('utf-8', 'strict')
        except UnicodeError:
            raise SFTPError(FX_NO_SUCH_FILE, "path could not be decoded as UTF-8")
    filename = filename.strip("/")
    if filename.endswith(FILEPART_SUFFIX):
        filename = filename[:-len(FILEPART_SUFFIX)]
    return filename


def _root_attrs():
    now = int(time())
    return {'size': 0,
            'uid': 0,
            'gid': 0,
            'permissions': stat.S_IFDIR | 0o755,
            'atime': now,
            'mtime': now,
           }


class EmptyDirectory:
    """The only directory there is, and it never has anything in it."""
    def __iter__(self):
        return iter(())
    def close(self):
        pass


@implementer(ISFTPFile)
class UploadFile(PrefixingLogMixin):
    """I represent a handle on one upload. Writes and the final close are
    forwarded to the SFTPUserHandler that opened me, which owns the upload
    state for the whole connection."""

    def __init__(self, handler, filename, flags):
        PrefixingLogMixin.__init__(self, facility="sftpgate.sftp", prefix=filename)
        if noisy: self.log(".__init__(%r, %r, %r)" % (handler, filename, flags), level=NOISY)
        self.handler = handler
        self.filename = filename
        self.flags = flags
        self.closed = False

    def readChunk(self, offset, length):
        self.log(".readChunk(%r, %r) unsupported" % (offset, length), level=OPERATIONAL)
        return _unsupported("download is not supported")

    def writeChunk(self, offset, data):
        request = ".writeChunk(%r, <data of length %r>)" % (offset, len(data))
        if noisy: self.log(request, level=NOISY)

        d = defer.execute(self.handler.write_upload, self.filename, offset, data)
        d.addBoth(_convert_error, request)
        return d

    def close(self):
        request = ".close()"
        self.log(request, level=OPERATIONAL)

        if self.closed:
            return defer.succeed(None)
        self.closed = True

        d = defer.execute(self.handler.close_upload, self.filename)
        d.addBoth(_convert_error, request)
        return d

    def getAttrs(self):
        self.log(".getAttrs() unsupported", level=OPERATIONAL)
        return _unsupported("fstat")

    def setAttrs(self, attrs):
        self.log(".setAttrs(%r) unsupported" % (attrs,), level=OPERATIONAL)
        return _unsupported("fsetstat")


class ClientSession(object):
    """One connected client. The username is only known once the client
    has authenticated."""

    def __init__(self, address, transport=None):
        self.address = address
        self.username = None
        self._transport = transport

    def terminate(self):
        if self._transport is not None:
            logmsg("terminating connection from %s (%s)" % (self.address, self.username),
                   facility="sftpgate.sftp", level=UNUSUAL)
            self._transport.sendDisconnect(DISCONNECT_BY_APPLICATION, b"request not permitted")

    def __repr__(self):
        return "<ClientSession %s@%s>" % (self.username, self.address)


class ClientRegistry(object):
    """I keep track of every connected ClientSession, and tell observers
    when one of them authenticates."""

    def __init__(self):
        self._sessions = []
        self._authenticated_observers = ObserverList()

    def __len__(self):
        return len(self._sessions)

    def __iter__(self):
        return iter(self._sessions[:])

    def add(self, client_session):
        self._sessions.append(client_session)

    def remove(self, client_session):
        if client_session in self._sessions:
            self._sessions.remove(client_session)

    def when_authenticated(self, observer):
        self._authenticated_observers.subscribe(observer)

    def authenticated(self, client_session, username):
        client_session.username = username
        self._authenticated_observers.notify(client_session)

    def disconnect_all(self):
        for client_session in self:
            client_session.terminate()


@implementer(ISFTPServer)
class SFTPUserHandler(ConchUser, PrefixingLogMixin):
    """I am the avatar for one authenticated connection. I present a flat,
    write-only filesystem whose root is always empty, and I own the uploads
    opened on this connection."""

    def __init__(self, username, upload_complete, max_upload_bytes=DEFAULT_MAX_UPLOAD_BYTES,
                 clients=None):
        ConchUser.__init__(self)
        PrefixingLogMixin.__init__(self, facility="sftpgate.sftp", prefix=username)
        if noisy: self.log(".__init__(%r, %r, %r)" % (username, upload_complete, max_upload_bytes), level=NOISY)

        self.channelLookup[b"session"] = UploadSession
        self.subsystemLookup[b"sftp"] = UploadTransferServer

        self.username = username
        self.client_session = None
        self._clients = clients
        self._upload_complete = upload_complete
        self._reassembler = UploadReassembler(max_upload_bytes)
        self._open_uploads = set()
        self._rejected_uploads = set()
        self._channel_opened = False
        self._transfer_started = False

    @property
    def address(self):
        if self.client_session is None:
            return None
        return self.client_session.address

    def bind_client(self, client_session):
        self.client_session = client_session

    def disconnect(self):
        if self.client_session is not None:
            self.client_session.terminate()
        elif self._clients is not None:
            self.log("no connection known, disconnecting every client", level=WEIRD)
            self._clients.disconnect_all()

    def lookupChannel(self, channelType, windowSize, maxPacket, data):
        if channelType != b"session" or self._channel_opened:
            self.log(".lookupChannel(%r) refused" % (channelType,), level=UNUSUAL)
            self.disconnect()
            raise ConchError("only one sftp session is allowed", connection.OPEN_ADMINISTRATIVELY_PROHIBITED)
        self._channel_opened = True
        return ConchUser.lookupChannel(self, channelType, windowSize, maxPacket, data)

    def claim_transfer(self):
        if self._transfer_started:
            return False
        self._transfer_started = True
        return True

    def logout(self):
        self.log(".logout()", level=OPERATIONAL)
        self.abandon_uploads()

    def abandon_uploads(self):
        for filename in sorted(self._open_uploads):
            self.log("abandoning incomplete upload %r" % (filename,), level=UNUSUAL)
            self._reassembler.discard(filename)
        self._open_uploads.clear()
        self._rejected_uploads.clear()

    def is_open(self, filename):
        return filename in self._open_uploads

    def write_upload(self, filename, offset, data):
        if filename in self._rejected_uploads:
            raise UploadTooLarge("%r was already rejected as too large" % (filename,))
        if filename not in self._open_uploads:
            raise UploadNotOpen("%r is not open for writing" % (filename,))
        try:
            self._reassembler.write(filename, data, offset)
        except UploadTooLarge:
            self.log("rejecting upload %r: too large" % (filename,), level=UNUSUAL)
            self._reassembler.discard(filename)
            self._open_uploads.discard(filename)
            self._rejected_uploads.add(filename)
            raise

    def close_upload(self, filename):
        if filename in self._rejected_uploads:
            self.log("not delivering rejected upload %r" % (filename,), level=OPERATIONAL)
            self._rejected_uploads.discard(filename)
        elif filename in self._open_uploads:
            upload = UploadComplete(filename, self._reassembler.pop(filename),
                                    self.username, self.address)
            self.log("upload complete: %r" % (upload,), level=OPERATIONAL)
            self._upload_complete(upload)
        self._open_uploads.discard(filename)

    def gotVersion(self, otherVersion, extData):
        self.log(".gotVersion(%r, %r)" % (otherVersion, extData), level=OPERATIONAL)
        return {}

    def openFile(self, pathstring, flags, attrs):
        request = ".openFile(%r, %r, %r)" % (pathstring, flags, attrs)
        self.log(request, level=OPERATIONAL)

        def _open():
            filename = normalize_filename(pathstring)
            self._rejected_uploads.discard(filename)
            self._open_uploads.add(filename)
            return UploadFile(self, filename, flags)
        d = defer.execute(_open)
        d.addBoth(_convert_error, request)
        return d

    def renameFile(self, from_pathstring, to_pathstring):
        # Clients rename to strip the in-progress suffix; the upload has
        # already been delivered under its normalized name.
        self.log(".renameFile(%r, %r) ignored" % (from_pathstring, to_pathstring), level=OPERATIONAL)
        return defer.succeed(None)

    def setAttrs(self, pathstring, attrs):
        # chmod and friends: there is no metadata to change.
        self.log(".setAttrs(%r, %r) ignored" % (pathstring, attrs), level=OPERATIONAL)
        return defer.succeed(None)

    def openDirectory(self, pathstring):
        self.log(".openDirectory(%r)" % (pathstring,), level=OPERATIONAL)
        return defer.succeed(EmptyDirectory())

    def getAttrs(self, pathstring, followLinks):
        request = ".getAttrs(%r, followLinks=%r)" % (pathstring, followLinks)
        self.log(request, level=OPERATIONAL)

        if followLinks:
            return _unsupported("stat")

        def _get():
            if pathstring.strip(b"/") == b"":
                return _root_attrs()
            raise SFTPError(FX_NO_SUCH_FILE, pathstring.decode("utf-8", "replace"))
        d = defer.execute(_get)
        d.addBoth(_convert_error, request)
        return d

    def removeFile(self, pathstring):
        self.log(".removeFile(%r) unsupported" % (pathstring,), level=OPERATIONAL)
        return _unsupported("removeFile")

    def removeDirectory(self, pathstring):
        self.log(".removeDirectory(%r) unsupported" % (pathstring,), level=OPERATIONAL)
        return _unsupported("removeDirectory")

    def makeDirectory(self, pathstring, attrs):
        self.log(".makeDirectory(%r, %r) unsupported" % (pathstring, attrs), level=OPERATIONAL)
        return _unsupported("makeDirectory")

    def readLink(self, pathstring):
        self.log(".readLink(%r) unsupported" % (pathstring,), level=OPERATIONAL)
        return _unsupported("readLink")

    def makeLink(self, linkPathstring, targetPathstring):
        self.log(".makeLink(%r, %r) unsupported" % (linkPathstring, targetPathstring), level=OPERATIONAL)
        return _unsupported("makeLink")

    def extendedRequest(self, extensionName, extensionData):
        self.log(".extendedRequest(%r, <data of length %r>) unsupported" % (extensionName, len(extensionData)),
                 level=OPERATIONAL)
        return _unsupported("extended request %r" % (extensionName,))

    def realPath(self, pathstring):
        self.log(".realPath(%r)" % (pathstring,), level=OPERATIONAL)

        return b"/" + pathstring.strip(b"/.")


class UploadTransferServer(FileTransferServer):
    def connectionLost(self, reason):
        # Conch closes every handle that is still open when the channel goes
        # away; those closes must not deliver partial uploads.
        self.client.abandon_uploads()
        FileTransferServer.connectionLost(self, reason)


class UploadSession(session.SSHSession):
    """The only channel a client may open. It accepts a single request to
    start the sftp subsystem; shells, commands, terminals, forwarding and
    other subsystems end the connection."""

    def requestReceived(self, requestType, data):
        if requestType == b"subsystem":
            subsystem, ignored = getNS(data)
            if subsystem == b"sftp" and self.avatar.claim_transfer():
                return session.SSHSession.request_subsystem(self, data)

        if requestType in DISALLOWED_REQUESTS:
            logmsg("rejecting session request %r" % (requestType,), facility="sftpgate.sftp", level=UNUSUAL)
            self.avatar.disconnect()
            return 0

        logmsg("ignoring session request %r" % (requestType,), facility="sftpgate.sftp", level=NOISY)
        return 0


class GatewayServerTransport(SSHServerTransport):
    def connectionMade(self):
        peer = self.transport.getPeer()
        self.client_session = ClientSession(getattr(peer, "host", None), self)
        self.factory.clients.add(self.client_session)
        logmsg("client connected from %s" % (self.client_session.address,),
               facility="sftpgate.sftp", level=OPERATIONAL)
        SSHServerTransport.connectionMade(self)

    def connectionLost(self, reason):
        SSHServerTransport.connectionLost(self, reason)
        self.factory.clients.remove(self.client_session)
        logmsg("client %r disconnected" % (self.client_session,), facility="sftpgate.sftp", level=OPERATIONAL)


class UploadUserAuthServer(userauth.SSHUserAuthServer):
    def serviceStarted(self):
        userauth.SSHUserAuthServer.serviceStarted(self)
        banner = getattr(self.transport.factory, "banner", None)
        if banner:
            self.transport.sendPacket(userauth.MSG_USERAUTH_BANNER, NS(_utf8(banner)) + NS(b""))


class UploadConnection(connection.SSHConnection):
    def serviceStarted(self):
        connection.SSHConnection.serviceStarted(self)
        avatar = getattr(self.transport, "avatar", None)
        client_session = getattr(self.transport, "client_session", None)
        if avatar is not None and client_session is not None:
            avatar.bind_client(client_session)
            self.transport.factory.clients.authenticated(client_session, avatar.username)


class GatewaySSHFactory(factory.SSHFactory):
    protocol = GatewayServerTransport
    services = {
        b"ssh-userauth": UploadUserAuthServer,
        b"ssh-connection": UploadConnection,
    }

    def __init__(self, portal, privkey, banner=None, moduli_file=None, clients=None):
        self.portal = portal
        self.publicKeys = {privkey.sshType(): privkey.public()}
        self.privateKeys = {privkey.sshType(): privkey}
        self.banner = banner
        self.moduli_file = moduli_file
        if clients is None:
            clients = ClientRegistry()
        self.clients = clients

    def getPrimes(self):
        if not self.moduli_file:
            return None
        try:
            # if present, this enables diffie-hellman-group-exchange
            return primes.parseModuliFile(self.moduli_file)
        except IOError:
            return None


@implementer(portal.IRealm)
class Dispatcher:
    def __init__(self, upload_complete, max_upload_bytes, clients):
        self._upload_complete = upload_complete
        self._max_upload_bytes = max_upload_bytes
        self._clients = clients

    def requestAvatar(self, avatarID, mind, interface):
        assert interface == IConchUser, interface
        if isinstance(avatarID, bytes):
            avatarID = avatarID.decode('utf-8')
        handler = SFTPUserHandler(avatarID, self._upload_complete, self._max_upload_bytes, self._clients)
        return (interface, handler, handler.logout)


class SFTPServer(service.MultiService):
    def __init__(self, checker, privkey, sftp_portstr, upload_complete,
                 max_upload_bytes=DEFAULT_MAX_UPLOAD_BYTES, banner=None, moduli_file=None):
        service.MultiService.__init__(self)

        self.clients = ClientRegistry()
        r = Dispatcher(upload_complete, max_upload_bytes, self.clients)
        p = portal.Portal(r)
        p.registerChecker(checker)

        self.factory = GatewaySSHFactory(p, privkey, banner, moduli_file, self.clients)

        s = strports.service(sftp_portstr, self.factory)
        s.setServiceParent(self)

    def shutdown(self):
        """Disconnect every client and stop listening."""
        logmsg("shutting down the SFTP server (%d clients connected)" % (len(self.clients),),
               facility="sftpgate.sftp", level=WEIRD)
        self.clients.disconnect_all()
        return defer.maybeDeferred(self.stopService)
