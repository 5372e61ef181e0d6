from zope.interface import Interface, Attribute


class ISink(Interface):
    """A downstream consumer of completed uploads"""

    name = Attribute("A short name used in log messages")

    fail_fast = Attribute("""True if a failure of this sink should shut down
    the whole server instead of being reported for this upload only""")

    def deliver(upload):
        """Deliver an UploadComplete to this sink.

        This method can return a deferred. A failure (or a Deferred that
        errbacks) is reported by the dispatcher and does not affect the other
        sinks."""


class IUploadDispatcher(Interface):
    """A component that receives completed uploads from the SFTP frontend"""

    def upload_complete(upload):
        """Queue an UploadComplete for delivery. Must not block."""
