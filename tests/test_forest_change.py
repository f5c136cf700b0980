"""Tests for the yearly forest cover, loss, carbon and emissions rasters."""
import os
import shutil
import tempfile
import unittest

import numpy
import numpy.testing
import pygeoprocessing
import taskgraph
from osgeo import osr

N = 255  # mask nodata


def make_raster(array, target_path, nodata=None):
    srs = osr.SpatialReference()
    srs.ImportFromEPSG(26910)
    pygeoprocessing.numpy_array_to_raster(
        array, nodata, (30, -30), (461261, 4923265), srs.ExportToWkt(),
        target_path)


class ConfigurationTests(unittest.TestCase):
    """Tests for the year range and threshold checks."""

    def test_valid_configuration(self):
        """ForestChange: boundary configurations are accepted."""
        from forestcarbon import forest_change

        for yr_str, yr_end, threshold in [
                (2000, 2000, 0), (2000, 2024, 100), (2024, 2024, 30.5)]:
            with self.subTest(yr_str=yr_str, yr_end=yr_end):
                self.assertIsNone(forest_change.check_configuration(
                    yr_str, yr_end, threshold))

    def test_invalid_configuration(self):
        """ForestChange: out of range years or threshold are rejected."""
        from forestcarbon import forest_change

        for yr_str, yr_end, threshold, message in [
                (1999, 2005, 30, 'start year'),
                (2000, 2025, 30, 'end year'),
                (2010, 2009, 30, 'must not be earlier than the start'),
                (2000, 2010, 100.5, 'threshold'),
                (2000, 2010, -0.1, 'threshold'),
                (None, 2010, 30, 'start year is required')]:
            with self.subTest(yr_str=yr_str, yr_end=yr_end,
                              threshold=threshold):
                with self.assertRaises(
                        forest_change.ConfigurationError) as cm:
                    forest_change.check_configuration(
                        yr_str, yr_end, threshold)
                self.assertIn(message, str(cm.exception))

    def test_configuration_error_is_value_error(self):
        """ForestChange: ConfigurationError can be caught as ValueError."""
        from forestcarbon import forest_change

        self.assertTrue(
            issubclass(forest_change.ConfigurationError, ValueError))


class BandNameTests(unittest.TestCase):
    """Tests for the band naming helpers."""

    def test_years(self):
        """ForestChange: cover years include the start, loss years don't."""
        from forestcarbon import forest_change

        self.assertEqual(
            list(forest_change.cover_years(2003, 2006)),
            [2003, 2004, 2005, 2006])
        self.assertEqual(
            list(forest_change.loss_years(2003, 2006)), [2004, 2005, 2006])
        self.assertEqual(list(forest_change.loss_years(2003, 2003)), [])
        self.assertEqual(forest_change.loss_code(2001), 1)
        self.assertEqual(forest_change.band_name('ce', 2024), 'ce2024')

    def test_expected_band_names(self):
        """ForestChange: stack order is fc, fl, cb then ce."""
        from forestcarbon import forest_change

        self.assertEqual(
            forest_change.expected_band_names(2010, 2012),
            ['fc2010', 'fc2011', 'fc2012', 'fl2011', 'fl2012',
             'cb2010', 'cb2011', 'cb2012', 'ce2011', 'ce2012'])
        self.assertEqual(
            forest_change.expected_band_names(2010, 2010),
            ['fc2010', 'cb2010'])


class ForestChangeOpTests(unittest.TestCase):
    """Tests for the per-block operations."""

    def test_baseline_op(self):
        """ForestChange: threshold is inclusive, nodata loss year is kept."""
        from forestcarbon import forest_change

        treecover = numpy.array([[29, 30, 31, 80, 80, 80]])
        lossyear = numpy.array([[0, 0, 0, 5, 6, 99]])
        result = forest_change._baseline_op(
            treecover, None, lossyear, 99, 30, forest_change.loss_code(2006))
        numpy.testing.assert_array_equal(result, [[N, 1, 1, N, 1, 1]])
        self.assertEqual(result.dtype, numpy.uint8)

    def test_baseline_op_treecover_nodata(self):
        """ForestChange: nodata tree cover is never forest."""
        from forestcarbon import forest_change

        result = forest_change._baseline_op(
            numpy.array([[200, 90]]), 200, numpy.array([[0, 0]]), None,
            0, 1)
        numpy.testing.assert_array_equal(result, [[N, 1]])

    def test_annual_loss_op(self):
        """ForestChange: loss is only inside the baseline, in that year."""
        from forestcarbon import forest_change

        baseline = numpy.array([[1, 1, 1, N]])
        lossyear = numpy.array([[3, 4, 99, 3]])
        result = forest_change._annual_loss_op(baseline, lossyear, 99, 3)
        numpy.testing.assert_array_equal(result, [[1, N, N, N]])

    def test_forest_cover_step_op(self):
        """ForestChange: cover minus loss, undefined loss is not loss."""
        from forestcarbon import forest_change

        previous = numpy.array([[1, 1, N, N]])
        loss = numpy.array([[1, N, 1, N]])
        result = forest_change._forest_cover_step_op(previous, loss)
        numpy.testing.assert_array_equal(result, [[N, 1, N, N]])

    def test_mask_values_op(self):
        """ForestChange: values outside the mask are undefined."""
        from forestcarbon import forest_change

        values = numpy.array([[5.0, 6.0, -1.0]], dtype=numpy.float32)
        mask = numpy.array([[1, N, 1]])
        result = forest_change._mask_values_op(values, -1.0, mask)
        numpy.testing.assert_array_equal(result, [[5.0, -1.0, -1.0]])


class ForestChangeRasterTests(unittest.TestCase):
    """Tests for the raster functions and the task graph builders."""

    def setUp(self):
        """Create a temporary workspace."""
        self.workspace_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Remove the temporary workspace."""
        shutil.rmtree(self.workspace_dir)

    def _path(self, name):
        return os.path.join(self.workspace_dir, name)

    def test_raster_functions(self):
        """ForestChange: baseline, loss, cover step and loss period."""
        from forestcarbon import forest_change

        make_raster(numpy.array([[90, 90, 90, 10]], dtype=numpy.uint8),
                    self._path('treecover.tif'))
        make_raster(numpy.array([[0, 1, 2, 2]], dtype=numpy.uint8),
                    self._path('lossyear.tif'))

        forest_change.calculate_baseline_forest_mask(
            self._path('treecover.tif'), self._path('lossyear.tif'), 50,
            2000, self._path('fc2000.tif'))
        forest_change.calculate_annual_loss(
            self._path('fc2000.tif'), self._path('lossyear.tif'), 2001,
            self._path('fl2001.tif'))
        forest_change.calculate_forest_cover_step(
            self._path('fc2000.tif'), self._path('fl2001.tif'),
            self._path('fc2001.tif'))
        forest_change.calculate_loss_period(
            self._path('fc2000.tif'), self._path('lossyear.tif'), 2000, 2002,
            self._path('loss_period.tif'))

        def read(name):
            return pygeoprocessing.raster_to_numpy_array(self._path(name))

        numpy.testing.assert_array_equal(read('fc2000.tif'), [[1, 1, 1, N]])
        numpy.testing.assert_array_equal(read('fl2001.tif'), [[N, 1, N, N]])
        numpy.testing.assert_array_equal(read('fc2001.tif'), [[1, N, 1, N]])
        numpy.testing.assert_array_equal(
            read('loss_period.tif'), [[0, 2001, 2002, 0]])
        self.assertEqual(
            pygeoprocessing.get_raster_info(
                self._path('fc2001.tif'))['nodata'], [N])

    def test_graph_builders(self):
        """ForestChange: the fold builds every year from the year before."""
        from forestcarbon import forest_change
        from forestcarbon import raster_stack

        make_raster(numpy.array([[90, 90, 90, 90]], dtype=numpy.uint8),
                    self._path('treecover.tif'))
        make_raster(numpy.array([[0, 4, 5, 6]], dtype=numpy.uint8),
                    self._path('lossyear.tif'))
        make_raster(numpy.array([[10, 20, 30, 40]], dtype=numpy.float32),
                    self._path('carbon.tif'), nodata=-1)
        graph = taskgraph.TaskGraph(self._path('cache'), n_workers=-1)
        treecover = raster_stack.LazyRaster(self._path('treecover.tif'), None)
        lossyear = raster_stack.LazyRaster(self._path('lossyear.tif'), None)
        carbon = raster_stack.LazyRaster(self._path('carbon.tif'), None)

        baseline = forest_change.baseline_forest_mask(
            graph, treecover, lossyear, 30, 2004, self._path('fc2004.tif'))
        self.assertEqual(list(baseline), ['fc2004'])
        loss = forest_change.annual_loss(
            graph, baseline, lossyear, 2004, 2006,
            lambda year: self._path(f'fl{year}.tif'))
        cover = forest_change.propagate_forest_cover(
            graph, baseline, loss, 2004, 2006,
            lambda year: self._path(f'fc{year}.tif'))
        stock = forest_change.carbon_stock(
            graph, carbon, cover, 2004, 2006,
            lambda year: self._path(f'cb{year}.tif'))
        emitted = forest_change.emissions(
            graph, carbon, loss, 2004, 2006,
            lambda year: self._path(f'ce{year}.tif'))
        graph.close()
        graph.join()

        self.assertEqual(list(loss), ['fl2005', 'fl2006'])
        self.assertEqual(list(cover), ['fc2004', 'fc2005', 'fc2006'])
        self.assertEqual(list(stock), ['cb2004', 'cb2005', 'cb2006'])
        self.assertEqual(list(emitted), ['ce2005', 'ce2006'])
        # the baseline stack is left as it was
        self.assertEqual(list(baseline), ['fc2004'])

        def read(stack, band):
            return pygeoprocessing.raster_to_numpy_array(stack[band].path)

        numpy.testing.assert_array_equal(read(cover, 'fc2004'), [[1, N, 1, 1]])
        numpy.testing.assert_array_equal(read(cover, 'fc2005'), [[1, N, N, 1]])
        numpy.testing.assert_array_equal(read(cover, 'fc2006'), [[1, N, N, N]])
        numpy.testing.assert_array_equal(read(loss, 'fl2006'), [[N, N, N, 1]])
        numpy.testing.assert_array_equal(
            read(stock, 'cb2005'), [[10, -1, -1, 40]])
        numpy.testing.assert_array_equal(
            read(emitted, 'ce2005'), [[-1, -1, 30, -1]])
