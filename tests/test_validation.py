"""Testing module for validation."""
import os
import shutil
import tempfile
import unittest

import numpy
import pydantic
import pygeoprocessing
from osgeo import gdal
from osgeo import ogr
from osgeo import osr

from forestcarbon.spec import (
    u,
    DirectoryInput,
    IntegerInput,
    ModelSpec,
    NumberInput,
    PercentInput,
    SingleBandRasterInput,
    StringInput,
    VectorInput)

gdal.UseExceptions()


def model_spec_with_defaults(model_id='', model_title='', userguide='',
                             aliases=set(), inputs=[], outputs=[],
                             validate_spatial_overlap=True):
    return ModelSpec(
        model_id=model_id, model_title=model_title, userguide=userguide,
        aliases=aliases, inputs=inputs, outputs=outputs, module_name='',
        validate_spatial_overlap=validate_spatial_overlap,
        input_field_order=[[i.id for i in inputs if not i.hidden]])


def make_raster(target_path, epsg=26910, origin=(461261, 4923265),
                pixel_size=(30, -30)):
    srs = osr.SpatialReference()
    srs.ImportFromEPSG(epsg)
    pygeoprocessing.numpy_array_to_raster(
        numpy.ones((3, 3), dtype=numpy.uint8), None, pixel_size, origin,
        srs.ExportToWkt(), target_path)


def make_vector(target_path, geom_type=ogr.wkbPolygon, fields=('GID_0',)):
    srs = osr.SpatialReference()
    srs.ImportFromEPSG(26910)
    vector = gdal.GetDriverByName('GPKG').Create(
        target_path, 0, 0, 0, gdal.GDT_Unknown)
    layer = vector.CreateLayer('regions', srs, geom_type)
    for field in fields:
        layer.CreateField(ogr.FieldDefn(field, ogr.OFTString))
    layer = None
    vector = None


class SpatialOverlapTest(unittest.TestCase):
    """Test Spatial Overlap."""

    def setUp(self):
        """Create a new workspace to use for each test."""
        self.workspace_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Remove the workspace created for this test."""
        shutil.rmtree(self.workspace_dir)

    def test_no_overlap(self):
        """Validation: verify lack of overlap."""
        from forestcarbon import validation

        filepath_1 = os.path.join(self.workspace_dir, 'raster_1.tif')
        filepath_2 = os.path.join(self.workspace_dir, 'raster_2.tif')
        make_raster(filepath_1)
        make_raster(filepath_2, origin=(561261, 4923265))

        bbox_list = [
            pygeoprocessing.get_raster_info(path)['bounding_box']
            for path in (filepath_1, filepath_2)]
        error_msg = validation.check_spatial_overlap([filepath_1, filepath_2])
        formatted_lists = validation._format_bbox_list(
            [filepath_1, filepath_2], bbox_list)
        self.assertEqual(
            error_msg,
            validation.MESSAGES['BBOX_NOT_INTERSECT'].format(
                bboxes=formatted_lists))

    def test_overlap_different_projections(self):
        """Validation: overlap is checked in WGS84 if projections differ."""
        from forestcarbon import validation

        filepath_1 = os.path.join(self.workspace_dir, 'raster_1.tif')
        filepath_2 = os.path.join(self.workspace_dir, 'raster_2.tif')
        make_raster(filepath_1)
        # same place, in WGS84
        make_raster(filepath_2, epsg=4326, origin=(-123.485, 44.47),
                    pixel_size=(0.001, -0.001))

        self.assertIsNone(validation.check_spatial_overlap(
            [filepath_1, filepath_2], different_projections_ok=True))

    def test_check_overlap_undefined_projection(self):
        """Validation: check overlap of raster with an undefined projection."""
        from forestcarbon import validation

        filepath_1 = os.path.join(self.workspace_dir, 'raster_1.tif')
        filepath_2 = os.path.join(self.workspace_dir, 'raster_2.tif')
        make_raster(filepath_1)
        raster = gdal.GetDriverByName('GTiff').Create(
            filepath_2, 3, 3, 1, gdal.GDT_Int32)
        raster.SetGeoTransform([2, 1, 0, 2, 0, 1])
        raster = None

        self.assertEqual(
            validation.check_spatial_overlap([filepath_1, filepath_2]),
            validation.MESSAGES['NO_PROJECTION'].format(filepath=filepath_2))


class ValidatorTest(unittest.TestCase):
    """Test the args_validator decorator."""

    def test_args_wrong_type(self):
        """Validation: check for error when args is the wrong type."""
        from forestcarbon import validation

        @validation.args_validator
        def validate(args, limit_to=None):
            pass

        with self.assertRaises(AssertionError):
            validate(args=123)

    def test_limit_to_not_in_args(self):
        """Validation: check for error when limit_to is not a key in args."""
        from forestcarbon import validation

        @validation.args_validator
        def validate(args, limit_to=None):
            pass

        with self.assertRaises(AssertionError):
            validate(args={}, limit_to='yr_str')

    def test_args_keys_must_be_strings(self):
        """Validation: check for error when args keys are not all strings."""
        from forestcarbon import validation

        @validation.args_validator
        def validate(args, limit_to=None):
            pass

        with self.assertRaises(AssertionError):
            validate(args={1: 'foo'})

    def test_wrong_parameter_names(self):
        """Validation: check for error when wrong function signature used."""
        from forestcarbon import validation

        @validation.args_validator
        def validate(foo):
            pass

        with self.assertRaises(AssertionError):
            validate({})

    def test_return_value(self):
        """Validation: the decorated function's warnings are returned."""
        from forestcarbon import validation

        @validation.args_validator
        def validate(args, limit_to=None):
            return [(['yr_str'], 'some warning')]

        self.assertEqual(
            validate({'yr_str': 2000}), [(['yr_str'], 'some warning')])


class DirectoryValidation(unittest.TestCase):
    """Test Directory Validation."""

    def setUp(self):
        """Create a new workspace to use for each test."""
        self.workspace_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Remove the workspace created for this test."""
        shutil.rmtree(self.workspace_dir)

    def test_exists(self):
        """Validation: when a folder must exist and does."""
        self.assertIsNone(
            DirectoryInput(id='d', contents=[]).validate(self.workspace_dir))

    def test_not_exists(self):
        """Validation: when a folder must exist but does not."""
        from forestcarbon import validation

        dirpath = os.path.join(self.workspace_dir, 'nonexistent_dir')
        self.assertEqual(
            DirectoryInput(id='d', contents=[]).validate(dirpath),
            validation.MESSAGES['DIR_NOT_FOUND'])

    def test_workspace_not_exists(self):
        """Validation: a workspace that will be created is fine."""
        dirpath = os.path.join(self.workspace_dir, 'new', 'workspace')
        self.assertIsNone(DirectoryInput(
            id='d', contents=[], must_exist=False,
            writable=True).validate(dirpath))

    def test_file(self):
        """Validation: when a file is given to folder validation."""
        from forestcarbon import validation

        filepath = os.path.join(self.workspace_dir, 'file.txt')
        with open(filepath, 'w') as file:
            file.write('hello!')
        self.assertEqual(
            DirectoryInput(id='d', contents=[]).validate(filepath),
            validation.MESSAGES['NOT_A_DIR'])


class RasterValidation(unittest.TestCase):
    """Test Raster Validation."""

    def setUp(self):
        """Create a new workspace to use for each test."""
        self.workspace_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Remove the workspace created for this test."""
        shutil.rmtree(self.workspace_dir)

    def test_file_not_found(self):
        """Validation: test that a raster exists."""
        from forestcarbon import validation

        filepath = os.path.join(self.workspace_dir, 'file.txt')
        self.assertEqual(
            SingleBandRasterInput(id='r', units=u.percent).validate(filepath),
            validation.MESSAGES['FILE_NOT_FOUND'])

    def test_invalid_raster(self):
        """Validation: test when a raster format is invalid."""
        from forestcarbon import validation

        filepath = os.path.join(self.workspace_dir, 'file.txt')
        with open(filepath, 'w') as bad_raster:
            bad_raster.write('not a raster')
        self.assertEqual(
            SingleBandRasterInput(id='r', units=u.percent).validate(filepath),
            validation.MESSAGES['NOT_GDAL_RASTER'])

    def test_raster_no_projection(self):
        """Validation: a raster without a projection is invalid."""
        from forestcarbon import validation

        filepath = os.path.join(self.workspace_dir, 'raster.tif')
        raster = gdal.GetDriverByName('GTiff').Create(
            filepath, 3, 3, 1, gdal.GDT_Byte)
        raster = None
        self.assertEqual(
            SingleBandRasterInput(id='r', units=u.percent).validate(filepath),
            validation.MESSAGES['INVALID_PROJECTION'])

    def test_geographic_raster(self):
        """Validation: a raster in geographic coordinates is allowed."""
        filepath = os.path.join(self.workspace_dir, 'raster.tif')
        make_raster(filepath, epsg=4326, origin=(-60, -10),
                    pixel_size=(0.001, -0.001))
        self.assertIsNone(
            SingleBandRasterInput(id='r', units=u.percent).validate(filepath))

    def test_virtual_path_skips_file_check(self):
        """Validation: GDAL virtual paths are opened without os checks."""
        from forestcarbon import validation

        filepath = '/vsimem/raster.tif'
        make_raster(filepath)
        self.addCleanup(gdal.Unlink, filepath)
        self.assertIsNone(
            SingleBandRasterInput(id='r', units=u.percent).validate(filepath))
        self.assertEqual(
            SingleBandRasterInput(id='r', units=u.percent).validate(
                '/vsimem/not_a_raster.tif'),
            validation.MESSAGES['NOT_GDAL_RASTER'])


class VectorValidation(unittest.TestCase):
    """Test Vector Validation."""

    def setUp(self):
        """Create a new workspace to use for each test."""
        self.workspace_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Remove the workspace created for this test."""
        shutil.rmtree(self.workspace_dir)

    def test_invalid_vector(self):
        """Validation: test when a vector file is invalid."""
        from forestcarbon import validation

        filepath = os.path.join(self.workspace_dir, 'file.txt')
        with open(filepath, 'w') as bad_vector:
            bad_vector.write('not a vector')
        self.assertEqual(
            VectorInput(id='v', geometry_types={'POLYGON'}).validate(filepath),
            validation.MESSAGES['NOT_GDAL_VECTOR'])

    def test_unknown_geometry_type(self):
        """Validation: geometry types must be known."""
        with self.assertRaises(pydantic.ValidationError):
            VectorInput(id='v', geometry_types={'POINT'})

    def test_vector_no_projection(self):
        """Validation: a vector layer without a projection is invalid."""
        from forestcarbon import validation

        filepath = os.path.join(self.workspace_dir, 'regions.gpkg')
        vector = gdal.GetDriverByName('GPKG').Create(
            filepath, 0, 0, 0, gdal.GDT_Unknown)
        vector.CreateLayer('regions', None, ogr.wkbPolygon)
        vector = None
        self.assertEqual(
            VectorInput(id='v', geometry_types={'POLYGON'}).validate(
                filepath),
            validation.MESSAGES['INVALID_PROJECTION'])

    def test_wrong_geom_type(self):
        """Validation: checks that the vector's geometry type is correct."""
        from forestcarbon import validation

        filepath = os.path.join(self.workspace_dir, 'points.gpkg')
        make_vector(filepath, geom_type=ogr.wkbPoint)
        self.assertEqual(
            VectorInput(
                id='v', geometry_types={'POLYGON', 'MULTIPOLYGON'}).validate(filepath),
            validation.MESSAGES['WRONG_GEOM_TYPE'].format(
                allowed={'POLYGON', 'MULTIPOLYGON'}))

    def test_multipolygon_allowed(self):
        """Validation: multipolygon layers are polygons too."""
        filepath = os.path.join(self.workspace_dir, 'regions.gpkg')
        make_vector(filepath, geom_type=ogr.wkbMultiPolygon)
        self.assertIsNone(
            VectorInput(
                id='v', geometry_types={'POLYGON', 'MULTIPOLYGON'}).validate(filepath))

    def test_load_fields_from_vector(self):
        """Validation: field names are read from the first layer."""
        from forestcarbon import validation

        filepath = os.path.join(self.workspace_dir, 'regions.gpkg')
        make_vector(filepath, fields=('GID_0', 'NAME_0'))
        self.assertEqual(
            validation.load_fields_from_vector(filepath), ['GID_0', 'NAME_0'])


class NumberValidation(unittest.TestCase):
    """Test Number Validation."""

    def test_string(self):
        """Validation: test when a string is not a number."""
        from forestcarbon import validation

        self.assertEqual(
            NumberInput(id='n', units=u.dimensionless).validate(
                'this is a string'),
            validation.MESSAGES['NOT_A_NUMBER'].format(
                value='this is a string'))

    def test_expression(self):
        """Validation: test that we can use numeric expressions."""
        from forestcarbon import validation

        percent = PercentInput(
            id='p', expression='(value >= 0) & (value <= 100)')
        self.assertIsNone(percent.validate(30))
        self.assertIsNone(percent.validate('100'))
        self.assertEqual(
            percent.validate(100.5),
            validation.MESSAGES['INVALID_VALUE'].format(
                condition='(value >= 0) & (value <= 100)'))

    def test_expression_missing_value(self):
        """Validation: an expression must refer to the value."""
        with self.assertRaises(pydantic.ValidationError):
            NumberInput(id='n', units=u.dimensionless, expression='x > 0')

    def test_integer(self):
        """Validation: years must be integers in range."""
        from forestcarbon import validation

        year = IntegerInput(
            id='y', units=u.year_AD,
            expression='(value >= 2000) & (value <= 2024)')
        self.assertIsNone(year.validate('2005'))
        self.assertIsNone(year.validate(2005.0))
        self.assertEqual(
            year.validate(2005.5),
            validation.MESSAGES['NOT_AN_INTEGER'].format(value=2005.5))
        self.assertEqual(
            year.validate(1999),
            validation.MESSAGES['INVALID_VALUE'].format(
                condition='(value >= 2000) & (value <= 2024)'))
        self.assertEqual(year.preprocess('2005'), 2005)
        self.assertIsNone(year.preprocess(''))


class StringValidation(unittest.TestCase):
    """Test String Validation."""

    def test_regexp(self):
        """Validation: values must match the regexp."""
        from forestcarbon import validation

        suffix = StringInput(id='s', regexp='[a-zA-Z0-9_-]*')
        self.assertIsNone(suffix.validate('brazil_2020'))
        self.assertEqual(
            suffix.validate('no spaces'),
            validation.MESSAGES['REGEXP_MISMATCH'].format(
                regexp='[a-zA-Z0-9_-]*'))


class TestValidationFromSpec(unittest.TestCase):
    """Test validation of args dicts against a model spec."""

    def setUp(self):
        """Create a new workspace to use for each test."""
        self.workspace_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Remove the workspace created for this test."""
        shutil.rmtree(self.workspace_dir)

    def test_requirement_missing(self):
        """Validation: verify absolute requirement on missing key."""
        from forestcarbon import validation

        spec = model_spec_with_defaults(inputs=[
            NumberInput(id='number_a', units=u.dimensionless)])
        self.assertEqual(
            validation.validate({}, spec),
            [(['number_a'], validation.MESSAGES['MISSING_KEY'])])

    def test_requirement_no_value(self):
        """Validation: verify absolute requirement without value."""
        from forestcarbon import validation

        spec = model_spec_with_defaults(inputs=[
            NumberInput(id='number_a', units=u.dimensionless)])
        self.assertEqual(
            validation.validate({'number_a': ''}, spec),
            [(['number_a'], validation.MESSAGES['MISSING_VALUE'])])

    def test_conditional_requirement(self):
        """Validation: a value is required when another input is set."""
        from forestcarbon import validation

        spec = model_spec_with_defaults(inputs=[
            StringInput(id='filter_field', required=False),
            StringInput(id='filter_value', required='filter_field')])
        self.assertEqual(validation.validate({}, spec), [])
        self.assertEqual(
            validation.validate({'filter_field': 'GID_0'}, spec),
            [(['filter_value'], validation.MESSAGES['MISSING_KEY'])])
        self.assertEqual(
            validation.validate(
                {'filter_field': 'GID_0', 'filter_value': 'BRA'}, spec), [])

    def test_args_enabled(self):
        """Validation: inputs are disabled by their allowed expression."""
        from forestcarbon import validation

        spec = model_spec_with_defaults(inputs=[
            StringInput(id='filter_field', required=False),
            StringInput(id='filter_value', required='filter_field',
                        allowed='filter_field')])
        self.assertEqual(
            validation.args_enabled({}, spec),
            {'filter_field': True, 'filter_value': False})
        self.assertEqual(
            validation.args_enabled({'filter_field': 'GID_0'}, spec),
            {'filter_field': True, 'filter_value': True})

    def test_disabled_value_not_validated(self):
        """Validation: a value given for a disabled input is ignored."""
        from forestcarbon import validation

        spec = model_spec_with_defaults(inputs=[
            StringInput(id='filter_field', required=False),
            StringInput(id='filter_value', required='filter_field',
                        allowed='filter_field', regexp='[A-Z]{3}')])
        self.assertEqual(
            validation.validate({'filter_value': 'not a code'}, spec), [])
        self.assertEqual(
            validation.validate(
                {'filter_field': 'GID_0', 'filter_value': 'not a code'},
                spec),
            [(['filter_value'], validation.MESSAGES['REGEXP_MISMATCH'].format(
                regexp='[A-Z]{3}'))])

    def test_extra_keys_ignored(self):
        """Validation: keys not in the model spec are not validated."""
        from forestcarbon import validation

        spec = model_spec_with_defaults(inputs=[
            NumberInput(id='number_a', units=u.dimensionless)])
        self.assertEqual(
            validation.validate({'number_a': 1, 'other': 'foo'}, spec), [])

    def test_spatial_overlap_error(self):
        """Validation: spatial inputs must overlap."""
        from forestcarbon import validation

        raster_a = os.path.join(self.workspace_dir, 'a.tif')
        raster_b = os.path.join(self.workspace_dir, 'b.tif')
        make_raster(raster_a)
        make_raster(raster_b, origin=(561261, 4923265))
        spec = model_spec_with_defaults(inputs=[
            SingleBandRasterInput(id='raster_a', units=u.dimensionless),
            SingleBandRasterInput(id='raster_b', units=u.dimensionless)])
        validation_warnings = validation.validate(
            {'raster_a': raster_a, 'raster_b': raster_b}, spec)
        self.assertEqual(len(validation_warnings), 1)
        self.assertEqual(validation_warnings[0][0], ['raster_a', 'raster_b'])
        self.assertIn('Not all of the spatial layers overlap',
                      validation_warnings[0][1])

    def test_get_invalid_keys(self):
        """Validation: invalid keys are collected from all warnings."""
        from forestcarbon import validation

        self.assertEqual(
            validation.get_invalid_keys([
                (['yr_end', 'yr_str'], 'message'), (['id_fields'], 'other')]),
            {'yr_end', 'yr_str', 'id_fields'})
