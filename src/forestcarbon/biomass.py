"""Biomass to carbon and CO2 conversions.

Above-ground biomass (AGB, t/ha) is converted to below-ground biomass with
the root-to-shoot allometry ``BGB = 0.489 * AGB ** 0.89``. Total carbon is
half of the total biomass and CO2 is carbon scaled by the molecular mass
ratio of CO2 to C (44/12, used as 3.67).
"""
import logging

import numpy
import pygeoprocessing
from osgeo import gdal

LOGGER = logging.getLogger(__name__)

BGB_COEFFICIENT = 0.489
BGB_EXPONENT = 0.89
CARBON_FRACTION = 0.5
CO2_PER_CARBON = 3.67

# -1.0 since biomass, carbon and CO2 densities are 0 or greater
BIOMASS_NODATA = -1.0


def below_ground_biomass(agb):
    """Below-ground biomass (t/ha) from above-ground biomass (t/ha)."""
    return BGB_COEFFICIENT * numpy.power(agb, BGB_EXPONENT)


def total_carbon(agb, bgb):
    """Carbon (t C/ha) in the above- and below-ground biomass."""
    return (agb + bgb) * CARBON_FRACTION


def total_co2(carbon):
    """CO2 equivalent (t CO2/ha) of a carbon density."""
    return carbon * CO2_PER_CARBON


def _valid_agb_mask(agb_array, agb_nodata):
    """Pixels with a defined, non-negative biomass value."""
    valid_mask = numpy.isfinite(agb_array) & (agb_array >= 0)
    if agb_nodata is not None:
        valid_mask &= ~pygeoprocessing.array_equals_nodata(
            agb_array, agb_nodata)
    return valid_mask


def _bgb_op(agb_array, agb_nodata):
    result = numpy.full(agb_array.shape, BIOMASS_NODATA, dtype=numpy.float32)
    valid_mask = _valid_agb_mask(agb_array, agb_nodata)
    result[valid_mask] = below_ground_biomass(
        agb_array[valid_mask].astype(numpy.float64))
    return result


def _total_carbon_op(agb_array, agb_nodata, bgb_array):
    result = numpy.full(agb_array.shape, BIOMASS_NODATA, dtype=numpy.float32)
    valid_mask = (
        _valid_agb_mask(agb_array, agb_nodata) &
        ~pygeoprocessing.array_equals_nodata(bgb_array, BIOMASS_NODATA))
    result[valid_mask] = total_carbon(
        agb_array[valid_mask].astype(numpy.float64),
        bgb_array[valid_mask].astype(numpy.float64))
    return result


def _total_co2_op(carbon_array):
    result = numpy.full(
        carbon_array.shape, BIOMASS_NODATA, dtype=numpy.float32)
    valid_mask = ~pygeoprocessing.array_equals_nodata(
        carbon_array, BIOMASS_NODATA)
    result[valid_mask] = total_co2(carbon_array[valid_mask])
    return result


def calculate_below_ground_biomass(agb_raster_path, target_bgb_path):
    """Write the below-ground biomass raster.

    Pixels where AGB is nodata or negative are nodata in the output.

    Args:
        agb_raster_path (string): path to an above-ground biomass raster
            in t/ha.
        target_bgb_path (string): path to the float32 raster to create.

    Returns:
        None
    """
    agb_nodata = pygeoprocessing.get_raster_info(
        agb_raster_path)['nodata'][0]
    pygeoprocessing.raster_calculator(
        [(agb_raster_path, 1), (agb_nodata, 'raw')], _bgb_op,
        target_bgb_path, gdal.GDT_Float32, BIOMASS_NODATA)


def calculate_total_carbon(agb_raster_path, bgb_raster_path,
                           target_carbon_path):
    """Write the total biomass carbon raster.

    Args:
        agb_raster_path (string): path to an above-ground biomass raster.
        bgb_raster_path (string): path to the below-ground biomass raster
            created by ``calculate_below_ground_biomass``.
        target_carbon_path (string): path to the float32 raster to create.

    Returns:
        None
    """
    agb_nodata = pygeoprocessing.get_raster_info(
        agb_raster_path)['nodata'][0]
    pygeoprocessing.raster_calculator(
        [(agb_raster_path, 1), (agb_nodata, 'raw'), (bgb_raster_path, 1)],
        _total_carbon_op, target_carbon_path, gdal.GDT_Float32,
        BIOMASS_NODATA)


def calculate_total_co2(carbon_raster_path, target_co2_path):
    """Write the CO2 equivalent of the total carbon raster."""
    pygeoprocessing.raster_calculator(
        [(carbon_raster_path, 1)], _total_co2_op, target_co2_path,
        gdal.GDT_Float32, BIOMASS_NODATA)
