import logging
import random
import unittest

import dnlens

from samples import SampleAssembly, SamplePdb, SamplePoint, sequence_points, widget_assembly


__all__ = ['dnlens', 'TestBase']


class TestBase(unittest.TestCase):

    def generate_random_buffer(self, size):
        return bytes(random.randrange(0, 0x100) for _ in range(size))

    def widget(self, **kwargs) -> SampleAssembly:
        return widget_assembly(**kwargs)

    def analyze(self, assembly: SampleAssembly) -> dnlens.AssemblyModel:
        model = dnlens.analyze(assembly.build())
        self.assertIsNone(model.error, msg=model.error)
        return model

    def widget_pdb(self, assembly: SampleAssembly, **kwargs) -> SamplePdb:
        rows = assembly.method_rows()
        methods = {
            rows['Widget', 'Run']: (1, sequence_points([
                SamplePoint(0x00, 10, 9),
                SamplePoint(0x07, 11, 13),
            ])),
            rows['Widget', 'Compute']: (2, sequence_points([
                SamplePoint(0x00, 20, 9),
            ])),
        }
        kwargs.setdefault('row_counts', assembly.row_counts)
        return SamplePdb(['Widget.cs', 'src/Widget.Compute.cs'], methods, len(rows), **kwargs)

    def setUp(self):
        random.seed(0xBAADF00D)  # guarantee deterministic 'random' buffers
        logging.disable(logging.CRITICAL)

    def tearDown(self):
        logging.disable(logging.NOTSET)

    def assertContains(self, container, member, msg=None):
        self.assertIn(member, container, msg)
