"""Regions of interest and per-region sums of a raster stack."""
import dataclasses
import logging
import typing

import numpy
import pandas
import pygeoprocessing
import pyproj
import shapely.geometry
import shapely.validation
import shapely.wkb
from osgeo import gdal
from osgeo import ogr
from osgeo import osr
from pygeoprocessing.geoprocessing_core import GDALUseExceptions

from . import utils
from .forest_change import ConfigurationError

LOGGER = logging.getLogger(__name__)

DEFAULT_ID_FIELDS = ('GID_0', 'NAME_0')
REGION_FID_FIELD = 'region_fid'
M2_PER_HECTARE = 10000.0

_GEOD = pyproj.Geod(ellps='WGS84')


class RegionGeometryError(ValueError):
    """Raised when a region's geometry cannot be measured or aggregated."""


@dataclasses.dataclass(frozen=True)
class Region:
    """A polygon of the regions vector.

    ``geometry`` is in the coordinate system of the rasters it will be
    aggregated over, and ``ha`` is its area in hectares. A region whose
    geometry could not be used has ``geometry`` and ``ha`` set to None and
    the reason in ``error``.
    """
    fid: int
    attributes: dict
    geometry: typing.Any = None
    ha: typing.Optional[float] = None
    error: typing.Optional[str] = None


@dataclasses.dataclass(frozen=True)
class StatsRow:
    """Per-region statistics: band name to sum, in band order."""
    fid: int
    attributes: dict
    ha: typing.Optional[float]
    values: dict
    error: typing.Optional[str] = None

    def as_record(self):
        """Flatten to a dict of column name to value."""
        return {**self.attributes, 'ha': self.ha, **self.values,
                'error': self.error}


def resolve_id_fields(field_names, id_fields=None):
    """Pick the fields that identify regions.

    Args:
        field_names (list): the fields of the regions vector.
        id_fields (list): the requested id fields, or None for the default:
            ``GID_0`` and ``NAME_0`` if the vector has both, otherwise every
            field.

    Returns:
        list of field names

    Raises:
        ConfigurationError if a requested field is not in the vector.
    """
    if not id_fields:
        if all(field in field_names for field in DEFAULT_ID_FIELDS):
            return list(DEFAULT_ID_FIELDS)
        return list(field_names)
    missing = [field for field in id_fields if field not in field_names]
    if missing:
        raise ConfigurationError(
            f'Id field(s) {", ".join(missing)} not found in the regions '
            f'vector. Available fields: {", ".join(field_names)}')
    return list(id_fields)


def region_area_ha(geometry, srs):
    """Area in hectares of a shapely polygon in the given coordinate system.

    Geographic geometries are measured on the WGS84 ellipsoid, projected
    geometries by their planar area in the projection's linear unit.
    """
    if srs.IsGeographic():
        area_m2, _ = _GEOD.geometry_area_perimeter(geometry)
        return abs(area_m2) / M2_PER_HECTARE
    return geometry.area * srs.GetLinearUnits() ** 2 / M2_PER_HECTARE


def _check_geometry(geometry):
    if geometry.is_empty:
        raise RegionGeometryError('Geometry is empty')
    if geometry.geom_type not in ('Polygon', 'MultiPolygon'):
        raise RegionGeometryError(
            f'Geometry type {geometry.geom_type} is not a polygon')
    if not geometry.is_valid:
        raise RegionGeometryError(
            'Invalid geometry: ' + shapely.validation.explain_validity(geometry))
    if geometry.area == 0:
        raise RegionGeometryError('Geometry has zero area')


def _load_region_geometry(ogr_geometry, source_srs, coord_trans):
    """Measure and reproject one feature geometry.

    Returns:
        Tuple of (shapely geometry in the target coordinate system,
        area in hectares)

    Raises:
        RegionGeometryError if the geometry is missing, empty, not a polygon,
        invalid, has no area, or cannot be transformed.
    """
    if ogr_geometry is None:
        raise RegionGeometryError('Feature has no geometry')
    source_geometry = shapely.wkb.loads(bytes(ogr_geometry.ExportToWkb()))
    _check_geometry(source_geometry)
    ha = region_area_ha(source_geometry, source_srs)

    target_ogr_geometry = ogr_geometry.Clone()
    try:
        target_ogr_geometry.Transform(coord_trans)
    except RuntimeError as error:
        raise RegionGeometryError(
            f'Geometry could not be transformed: {error}') from error
    target_geometry = shapely.wkb.loads(
        bytes(target_ogr_geometry.ExportToWkb()))
    if not numpy.all(numpy.isfinite(target_geometry.bounds)):
        raise RegionGeometryError(
            'Geometry could not be transformed to the raster coordinate '
            'system')
    _check_geometry(target_geometry)
    return target_geometry, ha


def load_regions(regions_vector_path, target_projection_wkt, id_fields=None,
                 filter_field=None, filter_value=None):
    """Load the regions of interest.

    Each feature is checked, measured and transformed on its own. A feature
    with an unusable geometry is logged and returned with its ``error`` set
    so that the other regions can still be aggregated.

    Args:
        regions_vector_path (string): path to a polygon vector.
        target_projection_wkt (string): coordinate system of the rasters
            the regions will be aggregated over.
        id_fields (list): fields identifying each region; see
            ``resolve_id_fields``.
        filter_field (string): optional field to select regions by.
        filter_value (string): keep only regions whose ``filter_field``
            value, as a string, equals this value.

    Returns:
        Tuple of (list of ``Region``, list of id field names)

    Raises:
        ConfigurationError if an id field or the filter field is not in the
        vector.
    """
    with GDALUseExceptions():
        vector = gdal.OpenEx(regions_vector_path, gdal.OF_VECTOR)
        layer = vector.GetLayer()
        field_names = [field.GetName() for field in layer.schema]
        id_fields = resolve_id_fields(field_names, id_fields)
        if filter_field and filter_field not in field_names:
            raise ConfigurationError(
                f'Filter field {filter_field} not found in the regions '
                f'vector. Available fields: {", ".join(field_names)}')

        source_srs = layer.GetSpatialRef()
        if source_srs is None:
            raise ConfigurationError(
                f'The regions vector {regions_vector_path} has no '
                'coordinate system')
        target_srs = osr.SpatialReference()
        target_srs.ImportFromWkt(target_projection_wkt)
        coord_trans = utils.create_coordinate_transformer(
            source_srs, target_srs)

        regions = []
        for feature in layer:
            if filter_field and (
                    str(feature.GetField(filter_field)) != str(filter_value)):
                continue
            fid = feature.GetFID()
            attributes = {
                field: feature.GetField(field) for field in id_fields}
            try:
                geometry, ha = _load_region_geometry(
                    feature.GetGeometryRef(), source_srs, coord_trans)
            except RegionGeometryError as error:
                LOGGER.warning(f'Skipping region {fid} {attributes}: {error}')
                regions.append(Region(fid, attributes, error=str(error)))
                continue
            regions.append(Region(fid, attributes, geometry, ha))
        layer = None
        vector = None

    LOGGER.info(
        f'Loaded {len(regions)} regions, '
        f'{sum(1 for r in regions if r.error)} with geometry errors')
    return regions, id_fields


def write_aggregation_vector(regions_vector_path, region_fids,
                             target_projection_wkt, target_vector_path):
    """Write the usable regions to a vector for zonal statistics.

    Args:
        regions_vector_path (string): path to the regions vector.
        region_fids (list): feature ids of the regions to write. These must
            be regions that ``load_regions`` returned without an error.
        target_projection_wkt (string): coordinate system of the target.
        target_vector_path (string): path to the GeoPackage to create. Its
            ``region_fid`` field holds the feature id of each region in
            ``regions_vector_path``.

    Returns:
        None
    """
    vector = gdal.OpenEx(regions_vector_path, gdal.OF_VECTOR)
    layer = vector.GetLayer()
    target_srs = osr.SpatialReference()
    target_srs.ImportFromWkt(target_projection_wkt)
    coord_trans = utils.create_coordinate_transformer(
        layer.GetSpatialRef(), target_srs)

    geometries = []
    for fid in region_fids:
        ogr_geometry = layer.GetFeature(fid).GetGeometryRef().Clone()
        ogr_geometry.Transform(coord_trans)
        geometry = shapely.wkb.loads(bytes(ogr_geometry.ExportToWkb()))
        if geometry.geom_type == 'Polygon':
            geometry = shapely.geometry.MultiPolygon([geometry])
        geometries.append(geometry)
    layer = None
    vector = None

    pygeoprocessing.shapely_geometry_to_vector(
        geometries, target_vector_path, target_projection_wkt, 'GPKG',
        fields={REGION_FID_FIELD: ogr.OFTInteger64},
        attribute_list=[{REGION_FID_FIELD: fid} for fid in region_fids],
        ogr_geom_type=ogr.wkbMultiPolygon)


def zonal_sums(band_paths, band_names, aggregation_vector_path):
    """Sum every band within every region.

    Pixels equal to a band's nodata value are left out of its sums.

    Args:
        band_paths (list): single-band rasters on the same grid, in the
            coordinate system of the aggregation vector.
        band_names (list): the name of each band, in the same order.
        aggregation_vector_path (string): vector written by
            ``write_aggregation_vector``.

    Returns:
        dict mapping region fid to a dict of band name to sum
    """
    vector = gdal.OpenEx(aggregation_vector_path, gdal.OF_VECTOR)
    layer = vector.GetLayer()
    region_fids = {
        feature.GetFID(): feature.GetField(REGION_FID_FIELD)
        for feature in layer}
    layer = None
    vector = None
    if not region_fids:
        LOGGER.warning('No regions to aggregate')
        return {}

    stats_per_band = pygeoprocessing.zonal_statistics(
        [(path, 1) for path in band_paths], aggregation_vector_path)
    sums = {}
    for agg_fid, region_fid in region_fids.items():
        sums[region_fid] = {
            name: float(band_stats[agg_fid]['sum'])
            for name, band_stats in zip(band_names, stats_per_band)}
    return sums


def build_stats_rows(regions, sums, band_names):
    """One ``StatsRow`` per region, in region order.

    Failed regions have an empty ``values`` dict and carry their error.
    """
    rows = []
    for region in regions:
        if region.error is not None:
            values = {}
        else:
            values = {name: sums[region.fid][name] for name in band_names}
        rows.append(StatsRow(
            region.fid, region.attributes, region.ha, values, region.error))
    return rows


def write_stats_csv(rows, id_fields, band_names, target_csv_path):
    """Write the statistics table.

    Columns are the id fields, ``ha``, every band in stack order and
    ``error``. Cells of failed regions are empty.
    """
    columns = list(id_fields) + ['ha'] + list(band_names) + ['error']
    table = pandas.DataFrame(
        [row.as_record() for row in rows], columns=columns)
    table.to_csv(target_csv_path, index=False)
