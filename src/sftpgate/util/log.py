import itertools

from foolscap.logging import log
from twisted.python import log as tw_log

NOISY = log.NOISY # 10
OPERATIONAL = log.OPERATIONAL # 20
UNUSUAL = log.UNUSUAL # 23
INFREQUENT = log.INFREQUENT # 25
CURIOUS = log.CURIOUS # 28
WEIRD = log.WEIRD # 30
SCARY = log.SCARY # 35
BAD = log.BAD # 40


msg = log.msg

# If log.err() happens during a unit test, the unit test should fail. We
# accomplish this by sending it to twisted.log too.

def err(failure=None, _why=None, **kwargs):
    tw_log.err(failure, _why, **kwargs)
    if 'level' not in kwargs:
        kwargs['level'] = log.UNUSUAL
    return log.err(failure, _why, **kwargs)


class LogMixin(object):
    """ I remember a msg id and a facility and pass them to log.msg() """
    def __init__(self, facility=None, grandparentmsgid=None):
        self._facility = facility
        self._grandparentmsgid = grandparentmsgid
        self._parentmsgid = None

    def log(self, msg, facility=None, parent=None, *args, **kwargs):
        if facility is None:
            facility = self._facility
        pmsgid = parent
        if pmsgid is None:
            pmsgid = self._parentmsgid
            if pmsgid is None:
                pmsgid = self._grandparentmsgid
        msgid = log.msg(msg, facility=facility, parent=pmsgid, *args, **kwargs)
        if self._parentmsgid is None:
            self._parentmsgid = msgid
        return msgid


_objnums = itertools.count(1)

class PrefixingLogMixin(LogMixin):
    """Every message is prefixed with the object's class, a process-wide
    serial number, and the optional prefix (typically a username or a
    filename)."""
    def __init__(self, facility=None, grandparentmsgid=None, prefix=''):
        LogMixin.__init__(self, facility, grandparentmsgid)
        self._objid = "<%s #%d>" % (self.__class__.__name__, next(_objnums))
        if prefix:
            self._prefix = "%s(%s): " % (self._objid, prefix)
        else:
            self._prefix = "%s: " % (self._objid,)

    def log(self, msg="", *args, **kwargs):
        formatted = self._prefix + msg
        if args:
            formatted = formatted % args
        return LogMixin.log(self, formatted, **kwargs)
