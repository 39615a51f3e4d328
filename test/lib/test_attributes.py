from dnlens.lib.dotnet.attributes import (
    AssemblyAttribute,
    AttributeDecoder,
    apply_assembly_attributes,
    read_fixed_string_argument,
)
from dnlens.lib.dotnet.image import DotNetImage
from dnlens.lib.dotnet.model import AssemblyIdentity

from samples import SampleAssembly, attribute_value

from .. import TestBase


class TestFixedStringArgument(TestBase):

    def test_string(self):
        self.assertEqual(read_fixed_string_argument(attribute_value('Acme Corporation')), 'Acme Corporation')
        self.assertEqual(read_fixed_string_argument(attribute_value('')), '')

    def test_unicode(self):
        self.assertEqual(read_fixed_string_argument(attribute_value('© Acme')), '© Acme')

    def test_long_string(self):
        text = 'x' * 300
        self.assertEqual(read_fixed_string_argument(attribute_value(text)), text)

    def test_null_string(self):
        self.assertIsNone(read_fixed_string_argument(B'\x01\x00\xFF\x00\x00'))

    def test_invalid_blobs(self):
        for blob in [
            None,
            B'',
            B'\x01\x00\x00',
            B'\x02\x00\x03abc',
            B'\x01\x00\x05abc',
            B'\x01\x00\xC0\x00',
            B'\x01\x00\x02\xC3\x28',
        ]:
            self.assertIsNone(read_fixed_string_argument(blob), msg=repr(blob))


class TestAssemblyAttributes(TestBase):

    def decode(self, assembly: SampleAssembly):
        tables = DotNetImage(assembly.build()).tables
        return list(AttributeDecoder(tables).assembly_attributes())

    def test_resolution_through_member_references(self):
        assembly = SampleAssembly()
        assembly.add_attribute('AssemblyCompanyAttribute', 'Acme')
        assembly.add_attribute('AssemblyConfigurationAttribute', None)
        self.assertEqual(self.decode(assembly), [
            AssemblyAttribute('AssemblyCompanyAttribute', 'Acme'),
            AssemblyAttribute('AssemblyConfigurationAttribute', None),
        ])

    def test_identity_fields(self):
        identity = AssemblyIdentity()
        apply_assembly_attributes(identity, [
            AssemblyAttribute('TargetFrameworkAttribute', '.NETCoreApp,Version=v8.0'),
            AssemblyAttribute('AssemblyCompanyAttribute', 'Acme'),
            AssemblyAttribute('AssemblyProductAttribute', 'Widgets'),
            AssemblyAttribute('AssemblyDescriptionAttribute', 'Widget tooling'),
            AssemblyAttribute('AssemblyCopyrightAttribute', 'Copyright 2024'),
            AssemblyAttribute('AssemblyFileVersionAttribute', '1.2.3.4'),
            AssemblyAttribute('AssemblyInformationalVersionAttribute', '1.2.3+build'),
            AssemblyAttribute('ComVisibleAttribute', 'ignored'),
        ])
        self.assertEqual(identity.target_framework, '.NETCoreApp,Version=v8.0')
        self.assertEqual(identity.company, 'Acme')
        self.assertEqual(identity.product, 'Widgets')
        self.assertEqual(identity.description, 'Widget tooling')
        self.assertEqual(identity.copyright, 'Copyright 2024')
        self.assertEqual(identity.file_version, '1.2.3.4')
        self.assertEqual(identity.informational_version, '1.2.3+build')
        self.assertIsNone(identity.configuration)
        self.assertFalse(identity.is_debug)

    def test_debug_configuration(self):
        for value, debug in [('Debug', True), ('DEBUG', True), ('Release', False), (None, False)]:
            identity = AssemblyIdentity()
            apply_assembly_attributes(identity, [AssemblyAttribute('AssemblyConfigurationAttribute', value)])
            self.assertEqual(identity.configuration, value)
            self.assertEqual(identity.is_debug, debug, msg=value)

    def test_debuggable_attribute(self):
        identity = AssemblyIdentity()
        apply_assembly_attributes(identity, [AssemblyAttribute('DebuggableAttribute', None)])
        self.assertTrue(identity.is_debug)
