"""
Delivery of completed uploads.

The SFTP frontend puts an UploadComplete on the SinkDispatcher's queue when a
client closes a file. The dispatcher starts every configured sink for that
upload (persistence, then email, then the HTTP relay) without waiting for one
to finish before starting the next, and without waiting for the sinks of
earlier uploads.
"""

from email.mime.text import MIMEText
from email.utils import formatdate
from io import BytesIO
from time import gmtime, strftime, time

from urllib3.filepost import encode_multipart_formdata
from zope.interface import implementer
from twisted.application import service
from twisted.internet import defer, endpoints, threads
from twisted.python.filepath import FilePath
from twisted.web.client import Agent, FileBodyProducer, readBody
from twisted.web.http_headers import Headers

from sftpgate.interfaces import ISink, IUploadDispatcher
from sftpgate.upload import DEFAULT_MAX_UPLOAD_BYTES
from sftpgate.util import log
from sftpgate.util.log import PrefixingLogMixin, NOISY, OPERATIONAL, WEIRD

OCTET_STREAM = "application/octet-stream"

DEFAULT_SUBJECT = "New upload: %(filename)s"

BODY_TEMPLATE = """\
A file has been uploaded.

Uploader: %(username)s
Address:  %(address)s
Filename: %(filename)s
Size:     %(size)d bytes
"""


class RelayError(Exception):
    """The HTTP endpoint answered with an error status."""


def upload_timestamp(now=None):
    """An ISO-8601 UTC timestamp with millisecond precision, with the colons
    replaced so it can be part of a filename: 2024-05-01T10-11-12.345Z"""
    if now is None:
        now = time()
    millis = int((now - int(now)) * 1000)
    stamp = strftime("%Y-%m-%dT%H:%M:%S", gmtime(now)) + ".%03dZ" % (millis,)
    return stamp.replace(":", "-")


def persisted_name(filename, now=None):
    # The normalized filename may still contain inner slashes.
    return "%s_%s" % (upload_timestamp(now), filename.replace("/", "_"))


@implementer(ISink)
class PersistenceSink(PrefixingLogMixin):
    """I write each upload to a new file in a local directory."""

    name = "persist"
    fail_fast = False

    def __init__(self, directory, now=time, defer_to_thread=threads.deferToThread):
        PrefixingLogMixin.__init__(self, facility="sftpgate.sinks", prefix=self.name)
        self.directory = FilePath(directory)
        self._now = now
        self._defer_to_thread = defer_to_thread

    def ensure_directory(self):
        if not self.directory.exists():
            self.directory.makedirs()
        self.log("will deposit uploads to %s" % (self.directory.path,), level=OPERATIONAL)

    def deliver(self, upload):
        target = self.directory.child(persisted_name(upload.filename, self._now()))
        self.log("dumping %d bytes to %s" % (upload.size, target.path), level=OPERATIONAL)
        d = self._defer_to_thread(target.setContent, upload.data)
        d.addCallback(lambda ign: target)
        return d


def create_email_message(mailfrom, to, subject, body):
    msg = MIMEText(body, "plain", "utf-8")
    msg["From"] = mailfrom
    msg["To"] = to
    msg["Date"] = formatdate(localtime=True)
    msg["Subject"] = subject
    return msg


@implementer(ISink)
class MailSink(PrefixingLogMixin):
    """I send a plain-text notification about each upload over SMTP."""

    name = "smtp"
    fail_fast = False

    def __init__(self, mailfrom, to, endpoint, subject=None,
                 smtpuser=None, smtppass=None, smtptls=False, reactor=None):
        PrefixingLogMixin.__init__(self, facility="sftpgate.sinks", prefix=self.name)
        self.mailfrom = mailfrom
        self.to = to
        self.endpoint = endpoint
        self.subject = subject or DEFAULT_SUBJECT
        self.smtpuser = smtpuser.encode("utf-8") if smtpuser else None
        self.smtppass = smtppass.encode("utf-8") if smtppass else None
        self.smtptls = smtptls
        self._reactor = reactor

    def create_message(self, upload):
        fields = {
            "username": upload.username,
            "address": upload.address,
            "filename": upload.filename,
            "size": upload.size,
        }
        return create_email_message(self.mailfrom, self.to,
                                    self.subject % fields, BODY_TEMPLATE % fields)

    def deliver(self, upload):
        msg = self.create_message(upload)
        d = self._sendmail([self.to], msg.as_bytes())
        d.addCallback(self._sent_ok, upload)
        return d

    def _sent_ok(self, result, upload):
        self.log("mail sent OK: To=%s Subject=%r about %r" % (self.to, self.subject, upload.filename),
                 level=OPERATIONAL)
        return result

    def _sendmail(self, to_addrs, msg):
        from twisted.mail.smtp import ESMTPSenderFactory

        reactor = self._reactor
        if reactor is None:
            from twisted.internet import reactor

        d = defer.Deferred()
        factory = ESMTPSenderFactory(
            self.smtpuser,
            self.smtppass,
            self.mailfrom,
            to_addrs,
            BytesIO(msg),
            d,
            retries=0,
            heloFallback=True,
            requireAuthentication=self.smtpuser is not None,
            requireTransportSecurity=self.smtptls,
        )
        factory.noisy = False

        endpoint = endpoints.clientFromString(reactor, self.endpoint)
        connecting = endpoint.connect(factory)
        def _connect_failed(f):
            if not d.called:
                d.errback(f)
        connecting.addErrback(_connect_failed)
        return d


@implementer(ISink)
class HTTPRelaySink(PrefixingLogMixin):
    """I POST each upload as multipart/form-data: the configured form values
    plus one field, named after the uploaded file, holding its bytes."""

    name = "http"

    def __init__(self, url, form_values=(), fail_fast=False, agent=None, reactor=None):
        PrefixingLogMixin.__init__(self, facility="sftpgate.sinks", prefix=self.name)
        self.url = url
        self.form_values = list(form_values)
        self.fail_fast = fail_fast
        if agent is None:
            if reactor is None:
                from twisted.internet import reactor
            agent = Agent(reactor)
        self._agent = agent

    def encode(self, upload):
        """Return (body, content_type) for the multipart/form-data POST."""
        fields = list(self.form_values)
        fields.append((upload.filename, (upload.filename, upload.data, OCTET_STREAM)))
        return encode_multipart_formdata(fields)

    def deliver(self, upload):
        body, content_type = self.encode(upload)
        self.log("pushing %r to %s (%d bytes)" % (upload.filename, self.url, len(body)), level=OPERATIONAL)
        headers = Headers({b"Content-Type": [content_type.encode("ascii")]})
        d = self._agent.request(b"POST", self.url.encode("utf-8"), headers,
                                FileBodyProducer(BytesIO(body)))
        d.addCallback(self._got_response)
        return d

    def _got_response(self, response):
        d = readBody(response)
        def _check(body):
            if response.code >= 400:
                raise RelayError("%s answered %d: %r" % (self.url, response.code, body[:200]))
            self.log("HTTP response %d: %r" % (response.code, body[:200]), level=OPERATIONAL)
            return response.code
        d.addCallback(_check)
        return d


@implementer(IUploadDispatcher)
class SinkDispatcher(service.Service, PrefixingLogMixin):
    """I consume UploadComplete messages and hand each one to my sinks.

    Every sink attempt is bounded by 'timeout' seconds; a timeout counts as
    that sink failing. A failing sink is logged and leaves the others alone,
    unless the sink is marked fail_fast, in which case 'on_fatal' is called
    with the Failure."""

    name = "sink-dispatcher"

    def __init__(self, sinks, max_upload_bytes=DEFAULT_MAX_UPLOAD_BYTES, timeout=None,
                 on_fatal=None, clock=None):
        PrefixingLogMixin.__init__(self, facility="sftpgate.sinks")
        self.sinks = list(sinks)
        self.max_upload_bytes = max_upload_bytes
        self.timeout = timeout
        self.on_fatal = on_fatal
        if clock is None:
            from twisted.internet import reactor as clock
        self._clock = clock
        self._queue = defer.DeferredQueue()
        self._waiting = None
        self._in_flight = set()

    def upload_complete(self, upload):
        self._queue.put(upload)

    def startService(self):
        service.Service.startService(self)
        self.log("delivering to: %s" % (", ".join([s.name for s in self.sinks]) or "nothing",),
                 level=OPERATIONAL)
        self._wait()

    def stopService(self):
        service.Service.stopService(self)
        if self._waiting is not None:
            self._waiting.cancel()
            self._waiting = None
        return defer.DeferredList(list(self._in_flight))

    def _wait(self):
        self._waiting = self._queue.get()
        self._waiting.addCallbacks(self._got_upload, self._stopped_waiting)

    def _stopped_waiting(self, f):
        f.trap(defer.CancelledError)

    def _got_upload(self, upload):
        self._waiting = None
        d = self.dispatch(upload)
        self._in_flight.add(d)
        d.addBoth(self._finished, d)
        if self.running:
            self._wait()

    def _finished(self, res, d):
        self._in_flight.discard(d)
        return res

    def dispatch(self, upload):
        """Start every sink for 'upload'. The returned Deferred fires with a
        DeferredList result once all of them have finished."""
        if upload.size > self.max_upload_bytes:
            self.log("dropping %r: larger than %d bytes" % (upload, self.max_upload_bytes), level=WEIRD)
            upload.release()
            return defer.succeed([])

        ds = []
        for sink in self.sinks:
            d = defer.maybeDeferred(sink.deliver, upload)
            if self.timeout is not None:
                d.addTimeout(self.timeout, self._clock)
            d.addCallbacks(self._sink_ok, self._sink_failed,
                           callbackArgs=(sink, upload), errbackArgs=(sink, upload))
            ds.append(d)

        dl = defer.DeferredList(ds, consumeErrors=True)
        def _release(res):
            upload.release()
            return res
        dl.addBoth(_release)
        return dl

    def _sink_ok(self, res, sink, upload):
        self.log("%s delivered %r" % (sink.name, upload.filename), level=NOISY)
        return res

    def _sink_failed(self, f, sink, upload):
        log.err(f, "%s sink failed for %r" % (sink.name, upload.filename),
                facility="sftpgate.sinks", level=WEIRD)
        if sink.fail_fast and self.on_fatal is not None:
            self.log("%s sink is fail-fast, shutting down" % (sink.name,), level=WEIRD)
            self.on_fatal(f)
        return f


def build_sinks(config, reactor=None):
    """Create the sinks enabled in a GatewayConfig, in delivery order."""
    sinks = []
    if config.persist_directory:
        sinks.append(PersistenceSink(config.path(config.persist_directory)))
    if config.smtp_enabled:
        sinks.append(MailSink(config.smtp_sender, config.smtp_recipient, config.smtp_endpoint,
                              subject=config.smtp_subject,
                              smtpuser=config.smtp_username, smtppass=config.smtp_password,
                              smtptls=config.smtp_require_tls, reactor=reactor))
    if config.http_url:
        sinks.append(HTTPRelaySink(config.http_url, config.http_form_values,
                                   fail_fast=config.http_fail_fast, reactor=reactor))
    return sinks
