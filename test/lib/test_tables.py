import gc
import weakref

from dnlens.lib.dotnet.builder import ModelBuilder
from dnlens.lib.dotnet.heaps import DotNetStructReader
from dnlens.lib.dotnet.metadata import NetMetaData
from dnlens.lib.dotnet.tables import Index, NetTable, bits_required, make_token

from .. import TestBase


class TestTables(TestBase):

    def setUp(self):
        super().setUp()
        self.assembly = self.widget()
        self.tables = NetMetaData(DotNetStructReader(self.assembly.metadata())).Tables

    def test_bits_required(self):
        self.assertEqual([bits_required(n) for n in (0, 1, 2, 3, 4, 5, 13, 22)], [0, 0, 1, 2, 2, 3, 4, 5])

    def test_tokens(self):
        self.assertEqual(make_token(NetTable.MethodDef, 1), 0x06000001)
        self.assertEqual(make_token(NetTable.TypeDef, 0x1234), 0x02001234)
        self.assertEqual(Index(NetTable.Param, 3).token, 0x08000003)
        self.assertEqual(Index(None, 3).token, 0)

    def test_nil_index(self):
        self.assertFalse(Index(NetTable.TypeDef, 0))
        self.assertFalse(Index(None, 5))
        self.assertTrue(Index(NetTable.TypeDef, 1))
        self.assertEqual(Index(NetTable.TypeDef, 1), Index(NetTable.TypeDef, 1))
        self.assertNotEqual(Index(NetTable.TypeDef, 1), Index(NetTable.TypeRef, 1))

    def test_row_counts(self):
        tables = self.tables
        self.assertEqual(len(tables.TypeDef), 3)
        self.assertEqual(len(tables.MethodDef), 7)
        self.assertEqual(len(tables.AssemblyRef), 1)
        self.assertEqual(tables.row_counts[NetTable.MethodDef], 7)
        self.assertEqual(tables.Field, [])

    def test_lookup(self):
        tables = self.tables
        self.assertEqual(tables.row(0x06000001).Name, 'Run')
        self.assertEqual(tables[Index(NetTable.TypeDef, 2)].TypeName, 'Widget')
        self.assertIs(tables[NetTable.TypeDef], tables.TypeDef)
        self.assertIs(tables['MethodDef'], tables.MethodDef)
        for invalid in (Index(NetTable.TypeDef, 0), Index(NetTable.TypeDef, 9), Index(None, 1)):
            with self.assertRaises(KeyError):
                tables[invalid]

    def test_member_lists(self):
        tables = self.tables
        self.assertEqual(tables.methods_of(1), [])
        self.assertEqual(tables.methods_of(2), [1, 2, 3, 4, 5, 6, 7])
        self.assertEqual(tables.methods_of(3), [])
        self.assertEqual(tables.params_of(1), [])
        self.assertEqual([tables.Param[k - 1].Name for k in tables.params_of(2)], ['count', 'label'])
        self.assertEqual([tables.Property[k - 1].Name for k in tables.properties_of(2)], ['Size', 'Title'])
        self.assertEqual(tables.properties_of(3), [])

    def test_accessors(self):
        rows = self.assembly.method_rows()
        self.assertEqual(self.tables.accessors, {
            1: (rows['Widget', 'get_Size'], 0),
            2: (0, rows['Widget', 'set_Title']),
        })

    def test_declaring_type(self):
        tables = self.tables
        for k in range(1, 8):
            self.assertEqual(tables.declaring_type_of(k), 2)
        self.assertEqual(tables.declaring_type_of(8), 0)

    def test_coded_index_width(self):
        tables = self.tables
        types = tables.TypesByID
        info = tables._read_index_info(types[NetTable.TypeDef], types[NetTable.TypeRef], types[NetTable.TypeSpec])
        self.assertEqual(info.bits, 2)
        self.assertFalse(info.large)

    def test_index_layouts_are_per_instance(self):
        other = NetMetaData(DotNetStructReader(self.assembly.metadata())).Tables
        self.assertIsNot(other._index_info, self.tables._index_info)
        self.assertTrue(self.tables._index_info)

    def test_tables_are_released(self):
        data = self.assembly.build()
        references = []
        for _ in range(5):
            builder = ModelBuilder(data)
            model = builder.build()
            self.assertIsNone(model.error)
            references.append(weakref.ref(builder.tables))
            del builder, model
        gc.collect()
        self.assertEqual([r for r in references if r() is not None], [])
