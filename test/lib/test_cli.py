import io
import json
import os
import tempfile

from contextlib import redirect_stdout

from dnlens.cli import get_parser, main
from dnlens.lib.environment import LogLevel, set_log_level

from samples import SAMPLE_PDB_GUID

from .. import TestBase


class TestCommandLine(TestBase):

    def setUp(self):
        super().setUp()
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()
        set_log_level(LogLevel.WARNING)
        super().tearDown()

    def file(self, name: str, data: bytes) -> str:
        path = os.path.join(self.root, name)
        with open(path, 'wb') as fd:
            fd.write(data)
        return path

    def run_main(self, *argv):
        output = io.StringIO()
        with redirect_stdout(output):
            code = main(list(argv))
        return code, json.loads(output.getvalue())

    def test_parser_defaults(self):
        args = get_parser().parse_args(['Sample.dll'])
        self.assertEqual(args.module, 'Sample.dll')
        self.assertIsNone(args.pdb)
        self.assertIsNone(args.verify)
        self.assertEqual(args.indent, 4)
        args = get_parser().parse_args(['Sample.dll', '-p', 'Sample.pdb', '--no-verify', '-vv'])
        self.assertEqual(args.pdb, 'Sample.pdb')
        self.assertIs(args.verify, False)
        self.assertEqual(args.verbose, 2)

    def test_module_only(self):
        module = self.file('Sample.dll', self.widget().build())
        code, output = self.run_main(module)
        self.assertEqual(code, 0)
        self.assertIsNone(output['Pdb'])
        assembly = output['Assembly']
        self.assertIsNone(assembly['error'])
        self.assertEqual(assembly['identity']['name'], 'Sample')
        self.assertEqual(assembly['identity']['version'], '1.2.3.4')
        self.assertEqual([t['full_name'] for t in assembly['types']], ['Acme.Widget'])

    def test_module_with_pdb(self):
        assembly = self.widget()
        self.analyze(assembly)
        module = self.file('Sample.dll', assembly.build())
        pdb = self.file('Sample.pdb', self.widget_pdb(assembly).build())
        code, output = self.run_main(module, '--pdb', pdb, '--indent', '0')
        self.assertEqual(code, 0)
        self.assertEqual(output['Pdb'], {'Success': True, 'Error': None})
        self.assertEqual(output['Assembly']['identity']['debug_guid'], str(SAMPLE_PDB_GUID))
        run = output['Assembly']['types'][0]['methods'][0]
        self.assertEqual(run['name'], 'Run')
        self.assertEqual(run['source_file'], 'Widget.cs')
        self.assertEqual(run['line_number'], 10)

    def test_invalid_module(self):
        module = self.file('garbage.bin', self.generate_random_buffer(0x400))
        code, output = self.run_main(module)
        self.assertEqual(code, 1)
        self.assertTrue(output['Assembly']['error'].startswith('Error analyzing assembly: '))

    def test_invalid_pdb(self):
        module = self.file('Sample.dll', self.widget().build())
        pdb = self.file('Sample.pdb', B'Microsoft C/C++ MSF 7.00\r\n\x1ADS\0\0\0')
        code, output = self.run_main(module, '-p', pdb)
        self.assertEqual(code, 1)
        self.assertFalse(output['Pdb']['Success'])
        self.assertTrue(output['Pdb']['Error'].startswith('Error loading PDB: '))
        self.assertIsNone(output['Assembly']['types'][0]['methods'][0]['source_file'])
