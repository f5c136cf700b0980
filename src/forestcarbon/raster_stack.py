"""Ordered, immutable stacks of lazily computed rasters.

A ``LazyRaster`` is the path of a raster together with the taskgraph task
that writes it (``None`` for rasters that already exist on disk). Building a
``RasterStack`` never touches pixels: the rasters are computed when the
task graph runs its tasks.
"""
import collections
import collections.abc
import logging
import math

import numpy
import pygeoprocessing
from osgeo import gdal
from osgeo import osr

from . import utils

LOGGER = logging.getLogger(__name__)

LazyRaster = collections.namedtuple('LazyRaster', 'path task')

M2_PER_HECTARE = 10000.0
PIXEL_AREA_NODATA = -1.0
HECTARE_NODATA = -1.0

# WGS84 semi-major and semi-minor axes, in meters
_WGS84_A = 6378137.0
_WGS84_B = 6356752.3142


class MissingBandError(KeyError):
    """Raised when a band name is not present in a ``RasterStack``.

    Attributes:
        missing (list) - the requested band names that are absent
        available (list) - the band names in the stack, in order
    """

    def __init__(self, missing, available):
        self.missing = list(missing)
        self.available = list(available)
        super().__init__(self.missing, self.available)

    def __str__(self):
        return (
            f'Band(s) {", ".join(self.missing)} not found in raster stack. '
            f'Available bands: {", ".join(self.available) or "(none)"}')


class RasterStack(collections.abc.Mapping):
    """An immutable ordered mapping of band name to ``LazyRaster``.

    Band names are unique and the order is insertion order. Methods that
    "add" bands return a new stack and leave this one unchanged.
    """

    def __init__(self, bands=()):
        """Create a stack from an iterable of ``(name, LazyRaster)`` pairs.

        Raises:
            ValueError if a band name appears more than once.
        """
        self._bands = {}
        for name, raster in bands:
            if name in self._bands:
                raise ValueError(f'Duplicate band name: {name}')
            self._bands[name] = raster

    def __getitem__(self, name):
        try:
            return self._bands[name]
        except KeyError:
            raise MissingBandError([name], self._bands) from None

    def __iter__(self):
        return iter(self._bands)

    def __len__(self):
        return len(self._bands)

    def __repr__(self):
        return f'RasterStack({list(self._bands)})'

    def with_band(self, name, raster):
        """Return a new stack with ``raster`` appended under ``name``."""
        return RasterStack(list(self._bands.items()) + [(name, raster)])

    def concat(self, *others):
        """Return a new stack with the bands of ``others`` appended in order."""
        bands = list(self._bands.items())
        for other in others:
            bands.extend(other.items())
        return RasterStack(bands)

    def require(self, names):
        """Raise ``MissingBandError`` naming every band of ``names`` not here."""
        missing = [name for name in names if name not in self._bands]
        if missing:
            raise MissingBandError(missing, self._bands)

    def select(self, names):
        """Return a new stack with only ``names``, in the order given."""
        self.require(names)
        return RasterStack((name, self._bands[name]) for name in names)

    @property
    def paths(self):
        return [raster.path for raster in self._bands.values()]

    @property
    def tasks(self):
        return [raster.task for raster in self._bands.values()
                if raster.task is not None]


def add_raster_task(graph, func, args, target_path, inputs=(), task_name=None):
    """Add a task that writes ``target_path`` and return it as a LazyRaster.

    Args:
        graph (taskgraph.TaskGraph): the graph to add the task to.
        func (callable): the function that writes ``target_path``.
        args (tuple): positional arguments to ``func``.
        target_path (string): the raster the task creates.
        inputs (iterable): ``LazyRaster`` values the task reads; their
            tasks become dependencies of the new task.
        task_name (string): optional task name for logging.

    Returns:
        ``LazyRaster(target_path, task)``
    """
    task = graph.add_task(
        func=func,
        args=args,
        target_path_list=[target_path],
        dependent_task_list=[
            raster.task for raster in inputs if raster.task is not None],
        task_name=task_name)
    return LazyRaster(target_path, task)


def geographic_pixel_area(center_lat, pixel_size_x, pixel_size_y):
    """Area in square meters of WGS84 pixels centered on ``center_lat``.

    This is the area of the band of the ellipsoid between the pixel's upper
    and lower latitudes, scaled by the fraction of the full circle covered by
    the pixel width.

    Args:
        center_lat (numpy.ndarray or float): latitude of the pixel centers
            in degrees.
        pixel_size_x (float): pixel width in degrees.
        pixel_size_y (float): pixel height in degrees.

    Returns:
        numpy array (or float) of pixel areas in square meters.
    """
    e = math.sqrt(1 - (_WGS84_B / _WGS84_A) ** 2)
    half_height = abs(pixel_size_y) / 2.0
    zone_areas = []
    for lat in (center_lat + half_height, center_lat - half_height):
        sin_lat = numpy.sin(numpy.radians(lat))
        zm = 1 - e * sin_lat
        zp = 1 + e * sin_lat
        zone_areas.append(
            numpy.pi * _WGS84_B ** 2 * (
                numpy.log(zp / zm) / (2 * e) + sin_lat / (zp * zm)))
    return numpy.abs(abs(pixel_size_x) / 360.0 * (zone_areas[0] - zone_areas[1]))


def calculate_pixel_area(base_raster_path, target_pixel_area_path):
    """Write a raster of pixel areas in square meters.

    Projected rasters have a constant pixel area, scaled by the linear unit
    of the projection. Geographic rasters have a pixel area that varies with
    latitude, computed per row on the WGS84 ellipsoid.

    Args:
        base_raster_path (string): the raster whose grid is used.
        target_pixel_area_path (string): the float64 raster to create.

    Returns:
        None
    """
    raster_info = pygeoprocessing.get_raster_info(base_raster_path)
    srs = osr.SpatialReference()
    srs.ImportFromWkt(raster_info['projection_wkt'])
    pixel_size_x, pixel_size_y = raster_info['pixel_size']

    if srs.IsProjected():
        pixel_area = utils.square_pixel_area(
            raster_info['pixel_size'], srs.GetLinearUnits())
        LOGGER.debug(f'Constant pixel area of {pixel_area} m^2')
        pygeoprocessing.new_raster_from_base(
            base_raster_path, target_pixel_area_path, gdal.GDT_Float64,
            [PIXEL_AREA_NODATA], fill_value_list=[pixel_area])
        return

    LOGGER.debug('Geographic raster; computing pixel area per row')
    pygeoprocessing.new_raster_from_base(
        base_raster_path, target_pixel_area_path, gdal.GDT_Float64,
        [PIXEL_AREA_NODATA], fill_value_list=[PIXEL_AREA_NODATA])
    origin_y = raster_info['geotransform'][3]
    target_raster = gdal.OpenEx(
        target_pixel_area_path, gdal.OF_RASTER | gdal.GA_Update)
    target_band = target_raster.GetRasterBand(1)
    for offsets in pygeoprocessing.iterblocks(
            (base_raster_path, 1), offset_only=True):
        row_index = numpy.arange(
            offsets['yoff'], offsets['yoff'] + offsets['win_ysize'])
        center_lat = origin_y + (row_index + 0.5) * pixel_size_y
        row_areas = geographic_pixel_area(
            center_lat, pixel_size_x, pixel_size_y)
        block = numpy.repeat(
            row_areas[:, numpy.newaxis], offsets['win_xsize'], axis=1)
        target_band.WriteArray(
            block, xoff=offsets['xoff'], yoff=offsets['yoff'])
    target_band = None
    target_raster = None


def _hectare_weight_op(values, values_nodata, pixel_area):
    result = numpy.full(values.shape, HECTARE_NODATA, dtype=numpy.float64)
    valid_mask = ~pygeoprocessing.array_equals_nodata(
        pixel_area, PIXEL_AREA_NODATA)
    if values_nodata is not None:
        valid_mask &= ~pygeoprocessing.array_equals_nodata(
            values, values_nodata)
    result[valid_mask] = (
        values[valid_mask].astype(numpy.float64) *
        pixel_area[valid_mask] / M2_PER_HECTARE)
    return result


def weight_raster_by_pixel_area(base_raster_path, pixel_area_path,
                                target_path):
    """Multiply every defined pixel by its area in hectares.

    A presence indicator of 1 becomes the hectares of the pixel, and a
    density in units per hectare becomes the amount in the pixel.

    Args:
        base_raster_path (string): the raster to weight.
        pixel_area_path (string): pixel areas in square meters, aligned with
            ``base_raster_path``.
        target_path (string): the float64 raster to create.

    Returns:
        None
    """
    base_nodata = pygeoprocessing.get_raster_info(
        base_raster_path)['nodata'][0]
    pygeoprocessing.raster_calculator(
        [(base_raster_path, 1), (base_nodata, 'raw'), (pixel_area_path, 1)],
        _hectare_weight_op, target_path, gdal.GDT_Float64, HECTARE_NODATA)


def weight_stack_by_pixel_area(graph, stack, pixel_area, path_for_band):
    """Apply ``weight_raster_by_pixel_area`` uniformly to every band.

    Args:
        graph (taskgraph.TaskGraph): the graph to add the tasks to.
        stack (RasterStack): the bands to weight.
        pixel_area (LazyRaster): the pixel area raster.
        path_for_band (callable): maps a band name to its target path.

    Returns:
        A new ``RasterStack`` with the same band names and order.
    """
    return RasterStack(
        (name, add_raster_task(
            graph, weight_raster_by_pixel_area,
            (raster.path, pixel_area.path, path_for_band(name)),
            path_for_band(name), inputs=(raster, pixel_area),
            task_name=f'hectare_weight_{name}'))
        for name, raster in stack.items())


def write_multiband_raster(band_paths, band_names, target_path):
    """Write a VRT with one band per raster, described by its band name.

    Args:
        band_paths (list): single-band rasters on the same grid.
        band_names (list): band descriptions, in the same order.
        target_path (string): path to the ``.vrt`` to create.

    Returns:
        None
    """
    vrt = gdal.BuildVRT(target_path, band_paths, separate=True)
    for index, name in enumerate(band_names, start=1):
        vrt.GetRasterBand(index).SetDescription(name)
    vrt.FlushCache()
    vrt = None


def materialize(graph, stack, target_path):
    """Add a task that writes ``stack`` as one multi-band raster.

    Returns:
        ``LazyRaster`` of the multi-band raster.
    """
    task = graph.add_task(
        func=write_multiband_raster,
        args=(stack.paths, list(stack), target_path),
        target_path_list=[target_path],
        dependent_task_list=stack.tasks,
        task_name='write_multiband_stack')
    return LazyRaster(target_path, task)
