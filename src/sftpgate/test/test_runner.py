import os
from io import StringIO

from twisted.trial import unittest

from sftpgate import __version__
from sftpgate.scripts import runner


class Options(unittest.TestCase):
    def test_version(self):
        out = StringIO()
        self.assertRaises(SystemExit, runner.runner, ["--version"], stdout=out)
        self.assertEqual(out.getvalue().strip(), "sftpgate %s" % (__version__,))

    def test_no_command(self):
        err = StringIO()
        self.assertEqual(runner.runner([], stdout=StringIO(), stderr=err), 1)
        self.assertIn("must specify a command", err.getvalue())

    def test_missing_config(self):
        err = StringIO()
        rc = runner.runner(["run", "--config", self.mktemp()], stdout=StringIO(), stderr=err)
        self.assertEqual(rc, 1)
        self.assertIn("does not exist", err.getvalue())

    def test_run_options(self):
        fn = self.mktemp()
        open(fn, "w").close()
        o = runner.Options(StringIO())
        o.parseOptions(["run", "-c", fn, "--logfile", "gateway.log"])
        self.assertEqual(o.subCommand, "run")
        self.assertEqual(o.subOptions["config"], fn)
        self.assertEqual(o.subOptions["logfile"], "gateway.log")

    def test_run_default_config(self):
        cwd = os.getcwd()
        basedir = self.mktemp()
        os.makedirs(basedir)
        os.chdir(basedir)
        self.addCleanup(os.chdir, cwd)
        open("gateway.cfg", "w").close()
        o = runner.Options(StringIO())
        o.parseOptions(["run"])
        self.assertEqual(o.subOptions["config"], "gateway.cfg")
        self.assertIdentical(o.subOptions["logfile"], None)


class FakeLogFile(object):
    closed = False

    def close(self):
        self.closed = True


class FakeGateway(object):
    def __init__(self, config, reactor=None):
        self.started = False

    def startService(self):
        self.started = True

    def stopService(self):
        pass


class FakeReactor(object):
    def __init__(self):
        self.triggers = []
        self.ran = False

    def addSystemEventTrigger(self, phase, event, f):
        self.triggers.append((phase, event, f))

    def run(self):
        self.ran = True


class Logging(unittest.TestCase):
    def test_open_logfile(self):
        fn = self.mktemp()
        observer, f = runner.open_logfile(fn)
        observer({"message": ("upload complete",), "isError": 0, "time": 0, "system": "-"})
        f.close()
        with open(fn) as log:
            self.assertIn("upload complete", log.read())

    def test_run_closes_logfile(self):
        from sftpgate import config, gateway
        logfile = FakeLogFile()
        self.patch(runner, "start_logging", lambda fn: logfile)
        self.patch(config.GatewayConfig, "from_file", staticmethod(lambda fn: None))
        self.patch(gateway, "Gateway", FakeGateway)
        reactor = FakeReactor()
        self.assertEqual(runner.run({"logfile": "gateway.log", "config": "gateway.cfg"}, reactor=reactor), 0)
        self.assertTrue(reactor.ran)
        self.assertTrue(logfile.closed)

    def test_run_closes_logfile_on_error(self):
        from sftpgate import config
        logfile = FakeLogFile()
        def _bad_config(fn):
            raise config.ConfigError("no such section")
        self.patch(runner, "start_logging", lambda fn: logfile)
        self.patch(config.GatewayConfig, "from_file", staticmethod(_bad_config))
        self.assertRaises(config.ConfigError, runner.run,
                          {"logfile": "gateway.log", "config": "gateway.cfg"}, reactor=FakeReactor())
        self.assertTrue(logfile.closed)
