import logging
import os

from dnlens.lib.environment import (
    DnlensFormatter,
    EVBool,
    EVLog,
    LogLevel,
    environment,
    logger,
    set_log_level,
)

from .. import TestBase


class TestEnvironment(TestBase):

    KEYS = ('DNLENS_TEST_FLAG', 'DNLENS_TEST_LEVEL', 'DNLENS_PDB_SKIP_VERIFY')

    def setUp(self):
        super().setUp()
        self._saved = {key: os.environ.pop(key, None) for key in self.KEYS}
        environment.reload()

    def tearDown(self):
        for key, value in self._saved.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        environment.reload()
        super().tearDown()

    def test_boolean_values(self):
        self.assertFalse(EVBool('TEST_FLAG').value)
        for value, expected in [
            ('1', True),
            ('0', False),
            ('yes', True),
            ('On', True),
            ('off', False),
            ('FALSE', False),
            ('', False),
            ('  ', False),
        ]:
            os.environ['DNLENS_TEST_FLAG'] = value
            self.assertEqual(EVBool('TEST_FLAG').value, expected, msg=repr(value))

    def test_log_levels(self):
        self.assertIsNone(EVLog('TEST_LEVEL').value)
        for value, expected in [
            ('0', LogLevel.WARNING),
            ('1', LogLevel.INFO),
            ('2', LogLevel.DEBUG),
            ('7', LogLevel.DEBUG),
            ('DETACHED', LogLevel.DETACHED),
            ('ERROR', LogLevel.ERROR),
            (' debug ', LogLevel.DEBUG),
        ]:
            os.environ['DNLENS_TEST_LEVEL'] = value
            self.assertEqual(EVLog('TEST_LEVEL').value, expected, msg=value)
        os.environ['DNLENS_TEST_LEVEL'] = 'LOUD'
        self.assertIsNone(EVLog('TEST_LEVEL').value)

    def test_reload(self):
        self.assertFalse(environment.pdb_skip_verify.value)
        os.environ['DNLENS_PDB_SKIP_VERIFY'] = 'true'
        self.assertFalse(environment.pdb_skip_verify.value)
        environment.reload()
        self.assertTrue(environment.pdb_skip_verify.value)

    def test_verbosity(self):
        self.assertEqual(LogLevel.FromVerbosity(-1), LogLevel.DETACHED)
        self.assertEqual(LogLevel.FromVerbosity(0), LogLevel.WARNING)
        self.assertEqual(LogLevel.FromVerbosity(1), LogLevel.INFO)
        for level in (LogLevel.DETACHED, LogLevel.WARNING, LogLevel.INFO, LogLevel.DEBUG):
            self.assertEqual(LogLevel.FromVerbosity(level.verbosity), level)


class TestLogging(TestBase):

    def test_logger_is_configured_once(self):
        root = logging.getLogger()
        sentinel = logging.NullHandler()
        root.addHandler(sentinel)
        try:
            log = logger('dnlens.test.environment')
        finally:
            root.removeHandler(sentinel)
        self.assertFalse(log.propagate)
        handlers = list(log.handlers)
        self.assertEqual(len(handlers), 1)
        self.assertIsInstance(handlers[0].formatter, DnlensFormatter)
        self.assertIs(logger('dnlens.test.environment'), log)
        self.assertEqual(log.handlers, handlers)

    def test_set_log_level(self):
        log = logger('dnlens.test.levels')
        other = logging.getLogger('unrelated.test.levels')
        level = other.level
        set_log_level(LogLevel.DEBUG)
        try:
            self.assertEqual(log.level, LogLevel.DEBUG)
            self.assertEqual(other.level, level)
            set_log_level(LogLevel.DETACHED)
            self.assertEqual(log.level, LogLevel.DETACHED)
        finally:
            set_log_level(LogLevel.WARNING)

    def test_formatter_level_names(self):
        formatter = DnlensFormatter('{custom_level_name}: {message}', style='{')
        record = logging.LogRecord('dnlens', logging.INFO, __file__, 1, 'hello', None, None)
        self.assertEqual(formatter.format(record), 'comment: hello')
        record = logging.LogRecord('dnlens', logging.WARNING, __file__, 1, 'careful', None, None)
        self.assertEqual(formatter.format(record), 'warning: careful')
