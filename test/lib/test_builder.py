import hashlib

from dnlens.lib.dotnet.builder import ModelBuilder, public_key_token

from samples import (
    SAMPLE_PDB_GUID,
    CodeViewEntry,
    E,
    SampleAssembly,
    SampleMethod,
    SampleProperty,
    SampleType,
    method_sig,
    property_sig,
)

from .. import TestBase, dnlens


class TestModelBuilder(TestBase):

    def test_non_module_input(self):
        for data in [B'', B'not a module', B'MZ' + bytes(0x100), self.generate_random_buffer(0x400)]:
            model = dnlens.analyze(data)
            self.assertIsNotNone(model.error)
            self.assertTrue(model.error.startswith('Error analyzing assembly: '))
            self.assertEqual(model.types, [])
            self.assertEqual(model.references, [])
            self.assertEqual(model.identity.name, '')

    def test_identity(self):
        model = self.analyze(self.widget())
        identity = model.identity
        self.assertEqual(identity.name, 'Sample')
        self.assertEqual(identity.version, '1.2.3.4')
        self.assertEqual(identity.culture, '')
        self.assertIsNone(identity.public_key_token)
        self.assertEqual(identity.architecture, 'x86')
        self.assertEqual(identity.subsystem, 'Console')
        self.assertEqual(identity.runtime_version, 'v4.0.30319')
        self.assertIsNone(identity.debug_guid)
        self.assertEqual(identity.source_files_count, 0)

    def test_architecture_and_subsystem(self):
        for machine, subsystem, architecture, name in [
            (0x8664, 2, 'x64', 'Windows GUI'),
            (0xAA64, 3, 'ARM64', 'Console'),
        ]:
            assembly = SampleAssembly(machine=machine, subsystem=subsystem)
            identity = self.analyze(assembly).identity
            self.assertEqual(identity.architecture, architecture)
            self.assertEqual(identity.subsystem, name)

    def test_round_trip(self):
        model = self.analyze(self.widget())
        self.assertEqual([t.full_name for t in model.types], ['Acme.Widget'])
        widget = model.types[0]
        self.assertEqual(widget.name, 'Widget')
        self.assertEqual(widget.namespace, 'Acme')
        self.assertTrue(widget.is_public)
        self.assertTrue(widget.is_class)
        self.assertFalse(widget.is_interface)
        self.assertFalse(widget.is_abstract)
        self.assertFalse(widget.is_sealed)
        run = widget.methods[0]
        self.assertEqual(run.name, 'Run')
        self.assertEqual(run.return_type, 'void')
        self.assertEqual(run.parameters, [])
        self.assertTrue(run.is_public)
        self.assertFalse(run.is_static)
        self.assertFalse(run.is_async)
        self.assertEqual(run.token, 0x06000001)
        self.assertEqual(widget.method_token, 0x06000001)
        self.assertIsNone(run.source_file)
        self.assertEqual(run.line_number, 0)

    def test_method_filtering(self):
        widget = self.analyze(self.widget()).types[0]
        self.assertEqual([m.name for m in widget.methods], ['Run', 'Compute', 'RunAsync', 'Wait'])
        self.assertEqual([m.token for m in widget.methods], [0x06000001, 0x06000002, 0x06000003, 0x06000004])

    def test_parameters(self):
        compute = self.analyze(self.widget()).types[0].methods[1]
        self.assertEqual(compute.return_type, 'int')
        self.assertEqual([(p.name, p.type) for p in compute.parameters], [('count', 'int'), ('label', 'string')])
        self.assertEqual(compute.signature, 'Compute(int count, string label)')
        self.assertEqual(compute.short_signature, 'Compute(int, string)')

    def test_unnamed_parameters(self):
        assembly = SampleAssembly()
        assembly.add_type(SampleType('Parser', methods=[
            SampleMethod('Parse', method_sig(E.BOOL, E.STRING, E.I4, E.I4), params=['text']),
        ]))
        parse = self.analyze(assembly).types[0].methods[0]
        self.assertEqual([p.name for p in parse.parameters], ['text', 'arg1', 'arg2'])

    def test_async_methods(self):
        methods = {m.name: m for m in self.analyze(self.widget()).types[0].methods}
        self.assertEqual(methods['RunAsync'].return_type, 'Task<int>')
        self.assertTrue(methods['RunAsync'].is_async)
        self.assertEqual(methods['Wait'].return_type, 'ValueTask')
        self.assertTrue(methods['Wait'].is_async)
        self.assertFalse(methods['Run'].is_async)
        self.assertFalse(methods['Compute'].is_async)

    def test_properties(self):
        properties = {p.name: p for p in self.analyze(self.widget()).types[0].properties}
        size = properties['Size']
        self.assertEqual(size.type, 'int')
        self.assertTrue(size.has_getter)
        self.assertFalse(size.has_setter)
        self.assertTrue(size.is_public)
        self.assertFalse(size.is_static)
        title = properties['Title']
        self.assertEqual(title.type, 'string')
        self.assertFalse(title.has_getter)
        self.assertTrue(title.has_setter)
        self.assertTrue(title.is_public)

    def test_property_visibility_from_setter(self):
        assembly = SampleAssembly()
        assembly.add_type(SampleType('Settings', methods=[
            SampleMethod('get_Level', method_sig(E.I4), flags=0x0881),
            SampleMethod('set_Level', method_sig(E.VOID, E.I4), flags=0x0886),
            SampleMethod('set_Name', method_sig(E.VOID, E.STRING), flags=0x0891),
        ], properties=[
            SampleProperty('Level', property_sig(E.I4), getter='get_Level', setter='set_Level'),
            SampleProperty('Name', property_sig(E.STRING, instance=False), setter='set_Name'),
        ]))
        settings = self.analyze(assembly).types[0]
        self.assertEqual(settings.methods, [])
        level, name = settings.properties
        self.assertTrue(level.is_public)
        self.assertEqual(level.type, 'int')
        self.assertFalse(name.is_public)
        self.assertTrue(name.is_static)
        self.assertEqual(name.type, 'string')

    def test_accessor_exclusion_is_per_type(self):
        assembly = SampleAssembly()
        assembly.add_type(SampleType('First', methods=[
            SampleMethod('get_Value', method_sig(E.I4), flags=0x0886),
        ], properties=[
            SampleProperty('Value', property_sig(E.I4), getter='get_Value'),
        ]))
        assembly.add_type(SampleType('Second', methods=[
            SampleMethod('get_Value', method_sig(E.I4)),
        ]))
        first, second = self.analyze(assembly).types
        self.assertEqual(first.methods, [])
        self.assertEqual([m.name for m in second.methods], ['get_Value'])
        self.assertEqual(second.method_token, 0x06000002)

    def test_excluded_types(self):
        assembly = SampleAssembly()
        assembly.add_type(SampleType('<PrivateImplementationDetails>', namespace=''))
        assembly.add_type(SampleType('Widget'))
        assembly.add_type(SampleType('<>c__DisplayClass0_0', namespace='Acme'))
        assembly.add_type(SampleType('<PrivateImplementationDetails>', namespace='Acme'))
        assembly.add_type(SampleType('Program', namespace=''))
        names = [t.name for t in self.analyze(assembly).types]
        self.assertEqual(names, ['Widget'])

    def test_failure_keeps_partial_results(self):
        assembly = self.widget()
        assembly.add_type(SampleType('Gadget'))
        assembly.method_pointers = [1, 2, 3, 4, 5, 6, 7, 99]
        model = dnlens.analyze(assembly.build())
        self.assertIsNotNone(model.error)
        self.assertTrue(model.error.startswith('Error analyzing assembly: '))
        self.assertEqual(model.identity.name, 'Sample')
        self.assertEqual(model.identity.version, '1.2.3.4')
        self.assertEqual([t.full_name for t in model.types], ['Acme.Widget'])
        self.assertEqual([m.name for m in model.types[0].methods], ['Run', 'Compute', 'RunAsync', 'Wait'])
        self.assertEqual(model.references, [])

    def test_method_pointers(self):
        assembly = self.widget()
        assembly.method_pointers = [1, 2, 3, 4, 5, 6, 7]
        widget, = self.analyze(assembly).types
        self.assertEqual([m.name for m in widget.methods], ['Run', 'Compute', 'RunAsync', 'Wait'])

    def test_type_flags(self):
        assembly = SampleAssembly()
        assembly.add_type(SampleType('IWidget', flags=0xA1))
        assembly.add_type(SampleType('Base', flags=0x81))
        assembly.add_type(SampleType('Final', flags=0x100))
        interface, base, final = self.analyze(assembly).types
        self.assertTrue(interface.is_interface)
        self.assertFalse(interface.is_class)
        self.assertTrue(interface.is_abstract)
        self.assertTrue(base.is_class)
        self.assertTrue(base.is_abstract)
        self.assertFalse(final.is_public)
        self.assertTrue(final.is_sealed)
        self.assertEqual(final.method_token, 0)

    def test_method_flags(self):
        assembly = SampleAssembly()
        assembly.add_type(SampleType('Shape', flags=0x81, methods=[
            SampleMethod('Area', method_sig(E.R8), flags=0x05C6),
            SampleMethod('Create', method_sig(E.OBJECT, instance=False), flags=0x0096),
            SampleMethod('Helper', flags=0x0081),
            SampleMethod('Protected', flags=0x0084),
            SampleMethod('Internal', flags=0x0083),
        ]))
        area, create, helper, protected, internal = self.analyze(assembly).types[0].methods
        self.assertTrue(area.is_abstract)
        self.assertTrue(area.is_virtual)
        self.assertTrue(area.is_public)
        self.assertTrue(create.is_static)
        self.assertEqual(create.return_type, 'object')
        self.assertFalse(helper.is_public)
        self.assertFalse(protected.is_public)
        self.assertFalse(internal.is_public)

    def test_undecodable_signature(self):
        assembly = SampleAssembly()
        assembly.add_type(SampleType('Broken', methods=[
            SampleMethod('Corrupt', B'\x20\x02\x01\x08'),
        ]))
        corrupt = self.analyze(assembly).types[0].methods[0]
        self.assertEqual(corrupt.return_type, '?')
        self.assertEqual(corrupt.parameters, [])
        self.assertFalse(corrupt.is_async)

    def test_references(self):
        assembly = self.widget()
        assembly.add_reference('System.Console', (8, 0, 0, 0))
        assembly.add_reference('System.Runtime', (8, 0, 0, 0))
        references = self.analyze(assembly).references
        self.assertEqual([str(r) for r in references], [
            'System.Runtime, Version=8.0.0.0',
            'System.Console, Version=8.0.0.0',
            'System.Runtime, Version=8.0.0.0',
        ])

    def test_public_key_token(self):
        key = bytes(range(0xA0))
        expected = hashlib.sha1(key).digest()[-8:][::-1].hex()
        self.assertEqual(public_key_token(key), expected)
        self.assertEqual(len(expected), 16)
        self.assertIsNone(public_key_token(B''))
        self.assertIsNone(public_key_token(None))
        first = self.analyze(SampleAssembly(public_key=key)).identity.public_key_token
        again = self.analyze(SampleAssembly(public_key=key)).identity.public_key_token
        self.assertEqual(first, expected)
        self.assertEqual(again, expected)

    def test_known_public_key_token(self):
        ecma = bytes.fromhex('00000000000000000400000000000000')
        self.assertEqual(public_key_token(ecma), 'b77a5c561934e089')

    def test_assembly_attributes(self):
        assembly = self.widget()
        assembly.add_attribute('TargetFrameworkAttribute', '.NETCoreApp,Version=v8.0')
        assembly.add_attribute('AssemblyConfigurationAttribute', 'Debug')
        assembly.add_attribute('AssemblyCompanyAttribute', None)
        assembly.add_raw_attribute('AssemblyProductAttribute', B'\x01\x00')
        identity = self.analyze(assembly).identity
        self.assertEqual(identity.target_framework, '.NETCoreApp,Version=v8.0')
        self.assertEqual(identity.configuration, 'Debug')
        self.assertTrue(identity.is_debug)
        self.assertIsNone(identity.company)
        self.assertIsNone(identity.product)

    def test_codeview(self):
        assembly = self.widget(codeview=CodeViewEntry(SAMPLE_PDB_GUID, 3, 'C:\\build\\Sample.pdb'))
        identity = self.analyze(assembly).identity
        self.assertEqual(identity.codeview_age, 3)
        self.assertEqual(identity.pdb_path, 'C:\\build\\Sample.pdb')
        self.assertEqual(identity.codeview_guid, str(SAMPLE_PDB_GUID))

    def test_no_codeview(self):
        identity = self.analyze(self.widget()).identity
        self.assertIsNone(identity.codeview_guid)
        self.assertIsNone(identity.pdb_path)

    def test_builder_is_stateless(self):
        data = self.widget().build()
        builder = ModelBuilder(data)
        self.assertEqual(builder.build(), builder.build())

    def test_json(self):
        model = self.analyze(self.widget())
        document = dnlens.to_json(model)
        self.assertEqual(set(document), {'identity', 'types', 'references', 'error'})
        self.assertIsNone(document['error'])
        self.assertEqual(document['identity']['name'], 'Sample')
        self.assertEqual(document['references'], [{'name': 'System.Runtime', 'version': '8.0.0.0'}])
        run = document['types'][0]['methods'][0]
        self.assertEqual(run['name'], 'Run')
        self.assertEqual(run['token'], 0x06000001)
        self.assertEqual(run['parameters'], [])
