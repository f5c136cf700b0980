"""Annual forest cover, forest loss, carbon stock and emissions rasters.

Forest and loss masks are Byte rasters holding 1 where the condition holds
and ``MASK_NODATA`` everywhere else, so pixels outside the mask are simply
undefined and drop out of every later sum.

Loss years follow the Hansen Global Forest Change encoding: the pixel value
is the calendar year of loss minus 2000, and 0 means no loss was recorded.

Wherever an undefined pixel has to be read as a boolean, the op says so with
``_coalesce``:

* baseline mask: undefined loss year is read as "kept";
* annual loss: undefined loss year is read as "not lost";
* forest cover recurrence: undefined annual loss is read as "not lost";
* carbon and emissions: an undefined mask pixel is read as "excluded".
"""
import functools
import logging

import numpy
import pygeoprocessing
from osgeo import gdal

from . import raster_stack

LOGGER = logging.getLogger(__name__)

LOSS_YEAR_EPOCH = 2000
# last year covered by the most recent Hansen Global Forest Change release
LATEST_LOSS_YEAR = 2024
NO_LOSS = 0

MASK_NODATA = 255
VALUE_NODATA = -1.0
LOSS_PERIOD_NODATA = 0

FOREST_COVER = 'fc'
FOREST_LOSS = 'fl'
CARBON_STOCK = 'cb'
CARBON_EMISSIONS = 'ce'
BAND_PREFIXES = (FOREST_COVER, FOREST_LOSS, CARBON_STOCK, CARBON_EMISSIONS)


class ConfigurationError(ValueError):
    """Raised for a year range, threshold or field that cannot be used."""


def check_configuration(yr_str, yr_end, tree_cover_threshold):
    """Raise ``ConfigurationError`` if the analysis parameters are unusable.

    Args:
        yr_str (int): the baseline year.
        yr_end (int): the last year of the analysis.
        tree_cover_threshold (number): minimum percent tree cover of a
            forest pixel.

    Returns:
        None
    """
    for name, value in [('start year', yr_str), ('end year', yr_end),
                        ('tree cover threshold', tree_cover_threshold)]:
        if value is None:
            raise ConfigurationError(f'The {name} is required.')
    if yr_str < LOSS_YEAR_EPOCH:
        raise ConfigurationError(
            f'The start year ({yr_str}) must not be earlier than '
            f'{LOSS_YEAR_EPOCH}, the first year of the loss year raster.')
    if yr_end > LATEST_LOSS_YEAR:
        raise ConfigurationError(
            f'The end year ({yr_end}) must not be later than '
            f'{LATEST_LOSS_YEAR}, the last year of the loss year raster.')
    if yr_end < yr_str:
        raise ConfigurationError(
            f'The end year ({yr_end}) must not be earlier than the start '
            f'year ({yr_str}).')
    if not 0 <= tree_cover_threshold <= 100:
        raise ConfigurationError(
            f'The tree cover threshold ({tree_cover_threshold}) must be '
            'between 0 and 100 percent.')


def band_name(prefix, year):
    """Band name of a yearly raster, e.g. ``band_name('fc', 2005) == 'fc2005'``."""
    return f'{prefix}{year}'


def cover_years(yr_str, yr_end):
    """Years with a forest cover and carbon stock band."""
    return range(yr_str, yr_end + 1)


def loss_years(yr_str, yr_end):
    """Years with a forest loss and emissions band.

    Loss is never attributed to the baseline year itself.
    """
    return range(yr_str + 1, yr_end + 1)


def loss_code(year):
    """Loss year raster value for a calendar year."""
    return year - LOSS_YEAR_EPOCH


def _coalesce(condition, valid_mask, fill):
    """Read ``condition`` where ``valid_mask`` is set, else ``fill``."""
    return numpy.where(valid_mask, condition, fill)


def _valid(array, nodata):
    if nodata is None:
        return numpy.ones(array.shape, dtype=bool)
    return ~pygeoprocessing.array_equals_nodata(array, nodata)


def _as_mask(condition):
    return numpy.where(condition, 1, MASK_NODATA).astype(numpy.uint8)


def _baseline_op(treecover, treecover_nodata, lossyear, lossyear_nodata,
                 threshold, first_kept_code):
    forest = _valid(treecover, treecover_nodata) & (treecover >= threshold)
    kept = _coalesce(
        (lossyear == NO_LOSS) | (lossyear >= first_kept_code),
        _valid(lossyear, lossyear_nodata), True)
    return _as_mask(forest & kept)


def _annual_loss_op(baseline, lossyear, lossyear_nodata, code):
    lost = _coalesce(
        lossyear == code, _valid(lossyear, lossyear_nodata), False)
    return _as_mask((baseline == 1) & lost)


def _forest_cover_step_op(previous_cover, annual_loss):
    lost = _coalesce(annual_loss == 1, annual_loss != MASK_NODATA, False)
    return _as_mask((previous_cover == 1) & ~lost)


def _mask_values_op(values, values_nodata, mask):
    result = numpy.full(values.shape, VALUE_NODATA, dtype=numpy.float32)
    included = _coalesce(mask == 1, mask != MASK_NODATA, False)
    keep = included & _valid(values, values_nodata)
    result[keep] = values[keep]
    return result


def _loss_period_op(baseline, lossyear, lossyear_nodata, first_code,
                    last_code):
    result = numpy.full(lossyear.shape, LOSS_PERIOD_NODATA, dtype=numpy.uint16)
    lost = _coalesce(
        (lossyear >= first_code) & (lossyear <= last_code),
        _valid(lossyear, lossyear_nodata), False)
    lost &= (baseline == 1)
    result[lost] = lossyear[lost].astype(numpy.uint16) + LOSS_YEAR_EPOCH
    return result


def _nodata(raster_path):
    return pygeoprocessing.get_raster_info(raster_path)['nodata'][0]


def calculate_baseline_forest_mask(treecover_raster_path,
                                   lossyear_raster_path,
                                   tree_cover_threshold, yr_str,
                                   target_mask_path):
    """Write the forest mask of the baseline year.

    A pixel is forest if its tree cover is at least the threshold and it
    has no loss recorded in or before ``yr_str``.

    Args:
        treecover_raster_path (string): percent tree cover in 2000.
        lossyear_raster_path (string): loss year raster on the same grid.
        tree_cover_threshold (number): inclusive minimum percent tree cover.
        yr_str (int): the baseline year.
        target_mask_path (string): the Byte mask raster to create.

    Returns:
        None
    """
    pygeoprocessing.raster_calculator(
        [(treecover_raster_path, 1), (_nodata(treecover_raster_path), 'raw'),
         (lossyear_raster_path, 1), (_nodata(lossyear_raster_path), 'raw'),
         (tree_cover_threshold, 'raw'), (loss_code(yr_str) + 1, 'raw')],
        _baseline_op, target_mask_path, gdal.GDT_Byte, MASK_NODATA)


def calculate_annual_loss(baseline_mask_path, lossyear_raster_path, year,
                          target_loss_path):
    """Write the mask of baseline forest lost in exactly ``year``."""
    pygeoprocessing.raster_calculator(
        [(baseline_mask_path, 1), (lossyear_raster_path, 1),
         (_nodata(lossyear_raster_path), 'raw'), (loss_code(year), 'raw')],
        _annual_loss_op, target_loss_path, gdal.GDT_Byte, MASK_NODATA)


def calculate_forest_cover_step(previous_cover_path, annual_loss_path,
                                target_cover_path):
    """Write this year's forest cover: last year's cover minus this year's loss."""
    pygeoprocessing.raster_calculator(
        [(previous_cover_path, 1), (annual_loss_path, 1)],
        _forest_cover_step_op, target_cover_path, gdal.GDT_Byte, MASK_NODATA)


def mask_raster(value_raster_path, mask_raster_path, target_raster_path):
    """Write the values of a raster inside a mask, undefined elsewhere."""
    pygeoprocessing.raster_calculator(
        [(value_raster_path, 1), (_nodata(value_raster_path), 'raw'),
         (mask_raster_path, 1)],
        _mask_values_op, target_raster_path, gdal.GDT_Float32, VALUE_NODATA)


def calculate_loss_period(baseline_mask_path, lossyear_raster_path, yr_str,
                          yr_end, target_loss_period_path):
    """Write the calendar year of loss of baseline forest lost in the period.

    Pixels of the baseline forest lost in a year of ``loss_years(yr_str,
    yr_end)`` hold that year. All other pixels are nodata.
    """
    pygeoprocessing.raster_calculator(
        [(baseline_mask_path, 1), (lossyear_raster_path, 1),
         (_nodata(lossyear_raster_path), 'raw'),
         (loss_code(yr_str + 1), 'raw'), (loss_code(yr_end), 'raw')],
        _loss_period_op, target_loss_period_path, gdal.GDT_UInt16,
        LOSS_PERIOD_NODATA)


def baseline_forest_mask(graph, treecover, lossyear, tree_cover_threshold,
                         yr_str, target_path):
    """Add the baseline mask task.

    Args:
        graph (taskgraph.TaskGraph): the graph to add the task to.
        treecover (raster_stack.LazyRaster): the aligned tree cover raster.
        lossyear (raster_stack.LazyRaster): the aligned loss year raster.
        tree_cover_threshold (number): inclusive minimum percent tree cover.
        yr_str (int): the baseline year.
        target_path (string): where to write the mask.

    Returns:
        ``RasterStack`` with the single band ``fc<yr_str>``.
    """
    baseline = raster_stack.add_raster_task(
        graph, calculate_baseline_forest_mask,
        (treecover.path, lossyear.path, tree_cover_threshold, yr_str,
         target_path),
        target_path, inputs=(treecover, lossyear),
        task_name=f'baseline_forest_mask_{yr_str}')
    return raster_stack.RasterStack(
        [(band_name(FOREST_COVER, yr_str), baseline)])


def annual_loss(graph, baseline, lossyear, yr_str, yr_end, path_for_year):
    """Add one loss mask task per loss year.

    Args:
        graph (taskgraph.TaskGraph): the graph to add the tasks to.
        baseline (raster_stack.RasterStack): the stack returned by
            ``baseline_forest_mask``.
        lossyear (raster_stack.LazyRaster): the aligned loss year raster.
        yr_str (int): the baseline year.
        yr_end (int): the last year of the analysis.
        path_for_year (callable): maps a year to its target path.

    Returns:
        ``RasterStack`` of ``fl<year>`` bands in year order.
    """
    baseline_mask = baseline[band_name(FOREST_COVER, yr_str)]
    return raster_stack.RasterStack(
        (band_name(FOREST_LOSS, year), raster_stack.add_raster_task(
            graph, calculate_annual_loss,
            (baseline_mask.path, lossyear.path, year, path_for_year(year)),
            path_for_year(year), inputs=(baseline_mask, lossyear),
            task_name=f'annual_loss_{year}'))
        for year in loss_years(yr_str, yr_end))


def propagate_forest_cover(graph, baseline, loss, yr_str, yr_end,
                           path_for_year):
    """Build the forest cover of every year from the previous year's cover.

    ``fc[y]`` is ``fc[y-1]`` without the pixels of ``fl[y]``, so the forest
    mask can only shrink. The stack of cover bands is the accumulator of a
    fold over the loss years; each step reads the previous year's band from
    it and returns a new stack with this year's band appended.

    Args:
        graph (taskgraph.TaskGraph): the graph to add the tasks to.
        baseline (raster_stack.RasterStack): the ``fc<yr_str>`` stack.
        loss (raster_stack.RasterStack): the ``fl<year>`` stack.
        yr_str (int): the baseline year.
        yr_end (int): the last year of the analysis.
        path_for_year (callable): maps a year to its target path.

    Returns:
        ``RasterStack`` of ``fc<year>`` bands for every cover year.
    """
    def _step(cover, year):
        previous = cover[band_name(FOREST_COVER, year - 1)]
        year_loss = loss[band_name(FOREST_LOSS, year)]
        current = raster_stack.add_raster_task(
            graph, calculate_forest_cover_step,
            (previous.path, year_loss.path, path_for_year(year)),
            path_for_year(year), inputs=(previous, year_loss),
            task_name=f'forest_cover_{year}')
        return cover.with_band(band_name(FOREST_COVER, year), current)

    return functools.reduce(_step, loss_years(yr_str, yr_end), baseline)


def _mask_by_year(graph, values, masks, mask_prefix, target_prefix, years,
                  path_for_year):
    return raster_stack.RasterStack(
        (band_name(target_prefix, year), raster_stack.add_raster_task(
            graph, mask_raster,
            (values.path, masks[band_name(mask_prefix, year)].path,
             path_for_year(year)),
            path_for_year(year),
            inputs=(values, masks[band_name(mask_prefix, year)]),
            task_name=f'{target_prefix}_{year}'))
        for year in years)


def carbon_stock(graph, total_carbon, cover, yr_str, yr_end, path_for_year):
    """Add one task per cover year masking total carbon by forest cover.

    Returns:
        ``RasterStack`` of ``cb<year>`` bands.
    """
    return _mask_by_year(
        graph, total_carbon, cover, FOREST_COVER, CARBON_STOCK,
        cover_years(yr_str, yr_end), path_for_year)


def emissions(graph, total_co2, loss, yr_str, yr_end, path_for_year):
    """Add one task per loss year masking total CO2 by that year's loss.

    Returns:
        ``RasterStack`` of ``ce<year>`` bands.
    """
    return _mask_by_year(
        graph, total_co2, loss, FOREST_LOSS, CARBON_EMISSIONS,
        loss_years(yr_str, yr_end), path_for_year)


def expected_band_names(yr_str, yr_end):
    """All band names of the final stack, in stack order."""
    return (
        [band_name(FOREST_COVER, y) for y in cover_years(yr_str, yr_end)] +
        [band_name(FOREST_LOSS, y) for y in loss_years(yr_str, yr_end)] +
        [band_name(CARBON_STOCK, y) for y in cover_years(yr_str, yr_end)] +
        [band_name(CARBON_EMISSIONS, y) for y in loss_years(yr_str, yr_end)])
