import os, sys

from twisted.python import usage, log as tw_log
from twisted.python.logfile import LogFile

from sftpgate import __appname__, __version__


class RunOptions(usage.Options):
    synopsis = "[options]"
    description = "Run the SFTP gateway in the foreground until interrupted."

    optParameters = [
        ("config", "c", "gateway.cfg", "Configuration file to read."),
        ("logfile", "l", None, "Also write the log to this file."),
    ]

    def postOptions(self):
        if not os.path.exists(self["config"]):
            raise usage.UsageError("configuration file %s does not exist" % (self["config"],))


class Options(usage.Options):
    synopsis = "\nUsage:  sftpgate <command> [command options]"
    optFlags = [
        ("version", "V", "Display the version and exit."),
    ]
    subCommands = [
        ["run", None, RunOptions, "Run the gateway."],
    ]

    def opt_version(self):
        print("%s %s" % (__appname__, __version__), file=self.stdout)
        sys.exit(0)

    def postOptions(self):
        if not hasattr(self, 'subOptions'):
            raise usage.UsageError("must specify a command")

    def __init__(self, stdout=sys.stdout):
        usage.Options.__init__(self)
        self.stdout = stdout


def open_logfile(logfile):
    """Return (observer, LogFile) for appending the log to 'logfile'."""
    f = LogFile.fromFullPath(os.path.abspath(logfile))
    return tw_log.FileLogObserver(f).emit, f


def start_logging(logfile=None, stdout=sys.stdout):
    """Log to stdout, and also to 'logfile' if given. Returns the open
    LogFile, which the caller closes, or None."""
    from foolscap.logging import log as flog
    tw_log.startLoggingWithObserver(tw_log.FileLogObserver(stdout).emit, setStdout=False)
    f = None
    if logfile:
        observer, f = open_logfile(logfile)
        tw_log.addObserver(observer)
    flog.bridgeLogsToTwisted()
    return f


def run(options, reactor=None):
    from sftpgate.config import GatewayConfig
    from sftpgate.gateway import Gateway

    if reactor is None:
        from twisted.internet import reactor

    logfile = start_logging(options["logfile"])
    try:
        config = GatewayConfig.from_file(options["config"])
        gateway = Gateway(config, reactor=reactor)
        gateway.startService()
        reactor.addSystemEventTrigger("before", "shutdown", gateway.stopService)
        reactor.run()
    finally:
        if logfile is not None:
            logfile.close()
    return 0


dispatch = {
    "run": run,
}


def runner(argv, stdout=sys.stdout, stderr=sys.stderr):
    config = Options(stdout)
    try:
        config.parseOptions(argv)
    except usage.error as e:
        c = config
        while hasattr(c, 'subOptions'):
            c = c.subOptions
        print(str(c), file=stderr)
        print("%s:  %s\n" % (sys.argv[0], e), file=stderr)
        return 1

    command = config.subCommand
    so = config.subOptions
    return dispatch[command](so)


def main():
    rc = runner(sys.argv[1:])
    sys.exit(rc)
