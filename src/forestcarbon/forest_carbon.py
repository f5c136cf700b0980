"""Forest Carbon Change model.

Annual forest cover, forest loss, standing carbon and CO2 emissions from
loss, summarized per region, from a year-2000 tree cover raster, a loss
year raster and an above-ground biomass raster.
"""
import logging

import pygeoprocessing

from . import biomass
from . import forest_change
from . import gettext
from . import raster_stack
from . import spec
from . import validation
from . import zonal
from .unit_registry import u

LOGGER = logging.getLogger(__name__)

MODEL_SPEC = spec.ModelSpec(
    model_id="forest_carbon",
    model_title=gettext("Forest Carbon Change"),
    userguide="forest_carbon.html",
    validate_spatial_overlap=True,
    different_projections_ok=True,
    aliases=("fcc",),
    module_name=__name__,
    input_field_order=[
        ["workspace_dir", "results_suffix"],
        ["treecover_raster_path", "lossyear_raster_path", "agb_raster_path"],
        ["tree_cover_threshold", "yr_str", "yr_end"],
        ["regions_vector_path", "id_fields", "filter_field", "filter_value"]
    ],
    inputs=[
        spec.WORKSPACE,
        spec.SUFFIX,
        spec.N_WORKERS,
        spec.SingleBandRasterInput(
            id="treecover_raster_path",
            name=gettext("tree cover"),
            about=gettext(
                "Map of percent tree canopy cover in the year 2000, such as"
                " the treecover2000 layer of the Global Forest Change"
                " dataset. All other rasters are aligned to the grid of this"
                " raster."
            ),
            data_type=int,
            units=u.percent
        ),
        spec.SingleBandRasterInput(
            id="lossyear_raster_path",
            name=gettext("loss year"),
            about=gettext(
                "Map of the year in which tree cover was lost, encoded as the"
                " number of years since 2000 (1 is 2001). 0 means that no"
                " loss was recorded."
            ),
            data_type=int,
            units=u.year_since_2000
        ),
        spec.SingleBandRasterInput(
            id="agb_raster_path",
            name=gettext("above-ground biomass"),
            about=gettext(
                "Map of above-ground live woody biomass density. Negative"
                " values are treated as nodata."
            ),
            data_type=float,
            units=u.metric_ton / u.hectare
        ),
        spec.PercentInput(
            id="tree_cover_threshold",
            name=gettext("tree cover threshold"),
            about=gettext(
                "Minimum percent tree cover for a pixel to be considered"
                " forest. A pixel with exactly this cover is forest."
            ),
            expression="(value >= 0) & (value <= 100)"
        ),
        spec.IntegerInput(
            id="yr_str",
            name=gettext("start year"),
            about=gettext(
                "Baseline year of the analysis. Forest lost in or before this"
                " year is not part of the baseline forest."
            ),
            units=u.year_AD,
            expression=(
                f"(value >= {forest_change.LOSS_YEAR_EPOCH}) & "
                f"(value <= {forest_change.LATEST_LOSS_YEAR})")
        ),
        spec.IntegerInput(
            id="yr_end",
            name=gettext("end year"),
            about=gettext(
                "Last year of the analysis. Must not be earlier than the"
                " start year."
            ),
            units=u.year_AD,
            expression=(
                f"(value >= {forest_change.LOSS_YEAR_EPOCH}) & "
                f"(value <= {forest_change.LATEST_LOSS_YEAR})")
        ),
        spec.VectorInput(
            id="regions_vector_path",
            name=gettext("regions"),
            about=gettext(
                "Map of the regions to summarize results over, such as"
                " country or province boundaries."
            ),
            geometry_types=spec.POLYGONS
        ),
        spec.StringInput(
            id="id_fields",
            name=gettext("id fields"),
            about=gettext(
                "Comma-separated names of the fields of the regions vector"
                " that identify each region in the results table. If not"
                " provided, GID_0 and NAME_0 are used when the vector has"
                " both, otherwise all fields are used."
            ),
            required=False
        ),
        spec.StringInput(
            id="filter_field",
            name=gettext("filter field"),
            about=gettext(
                "Name of a field of the regions vector used to select the"
                " regions to summarize."
            ),
            required=False
        ),
        spec.StringInput(
            id="filter_value",
            name=gettext("filter value"),
            about=gettext(
                "Only regions whose filter field equals this value are"
                " summarized. Required if a filter field is provided."
            ),
            required="filter_field",
            allowed="filter_field"
        )
    ],
    outputs=[
        spec.CSVOutput(
            id="forest_change_stats",
            path="forest_change_stats.csv",
            about=gettext(
                "Table of statistics for each region. Band columns are sums"
                " over the region. Columns for regions with unusable"
                " geometries are empty and the reason is in the error"
                " column."
            ),
            columns=[
                spec.NumberOutput(
                    id="ha",
                    about=gettext("Area of the region."),
                    units=u.hectare
                ),
                spec.NumberOutput(
                    id="fc[YEAR]",
                    about=gettext("Forest area in the year."),
                    units=u.hectare
                ),
                spec.NumberOutput(
                    id="fl[YEAR]",
                    about=gettext("Area of forest lost in the year."),
                    units=u.hectare
                ),
                spec.NumberOutput(
                    id="cb[YEAR]",
                    about=gettext("Carbon stock of the forest in the year."),
                    units=u.metric_ton
                ),
                spec.NumberOutput(
                    id="ce[YEAR]",
                    about=gettext("CO2 emitted by forest loss in the year."),
                    units=u.metric_ton
                ),
                spec.StringOutput(
                    id="error",
                    about=gettext(
                        "Why the region could not be summarized, if it"
                        " could not.")
                )
            ]
        ),
        spec.SingleBandRasterOutput(
            id="below_ground_biomass",
            path="below_ground_biomass.tif",
            about=gettext("Below-ground biomass derived from the AGB."),
            data_type=float,
            units=u.metric_ton / u.hectare
        ),
        spec.SingleBandRasterOutput(
            id="total_carbon",
            path="total_carbon.tif",
            about=gettext("Carbon in above- and below-ground biomass."),
            data_type=float,
            units=u.metric_ton / u.hectare
        ),
        spec.SingleBandRasterOutput(
            id="total_co2",
            path="total_co2.tif",
            about=gettext("CO2 equivalent of the total carbon."),
            data_type=float,
            units=u.metric_ton / u.hectare
        ),
        spec.SingleBandRasterOutput(
            id="loss_period",
            path="loss_period.tif",
            about=gettext(
                "Year in which baseline forest was lost, for forest lost"
                " after the start year and no later than the end year."
            ),
            data_type=int,
            units=u.year_AD,
            created_if="yr_end > yr_str"
        ),
        spec.RasterOutput(
            id="hectare_weighted_stack",
            path="hectare_weighted_stack.vrt",
            about=gettext(
                "Every forest cover, forest loss, carbon stock and emissions"
                " raster multiplied by pixel area in hectares, one band per"
                " raster. Bands are described by their names, such as"
                " fc2005."
            ),
            bands=[
                spec.RasterBand(band_id="fc[YEAR]", units=u.hectare),
                spec.RasterBand(band_id="fl[YEAR]", units=u.hectare),
                spec.RasterBand(band_id="cb[YEAR]", units=u.metric_ton),
                spec.RasterBand(band_id="ce[YEAR]", units=u.metric_ton)
            ]
        ),
        spec.SingleBandRasterOutput(
            id="aligned_treecover",
            path="intermediate_outputs/aligned_treecover.tif",
            about=gettext("Tree cover clipped to the analysis area."),
            data_type=int,
            units=u.percent
        ),
        spec.SingleBandRasterOutput(
            id="aligned_lossyear",
            path="intermediate_outputs/aligned_lossyear.tif",
            about=gettext("Loss year aligned to the tree cover grid."),
            data_type=int,
            units=u.year_since_2000
        ),
        spec.SingleBandRasterOutput(
            id="aligned_agb",
            path="intermediate_outputs/aligned_agb.tif",
            about=gettext("Above-ground biomass aligned to the tree cover grid."),
            data_type=float,
            units=u.metric_ton / u.hectare
        ),
        spec.VectorOutput(
            id="aggregation_regions",
            path="intermediate_outputs/aggregation_regions.gpkg",
            about=gettext(
                "The regions that could be summarized, in the coordinate"
                " system of the tree cover raster."
            ),
            geometry_types=spec.MULTIPOLYGON,
            fields=[
                spec.IntegerOutput(
                    id="region_fid",
                    about=gettext(
                        "Feature id of the region in the regions vector."))
            ]
        ),
        spec.SingleBandRasterOutput(
            id="pixel_area",
            path="intermediate_outputs/pixel_area.tif",
            about=gettext("Area of each pixel."),
            data_type=float,
            units=u.meter ** 2
        ),
        spec.SingleBandRasterOutput(
            id="fc[YEAR]",
            path="intermediate_outputs/fc[YEAR].tif",
            about=gettext(
                "Forest cover in the year: 1 where there is forest, nodata"
                " elsewhere."
            ),
            data_type=int,
            units=u.dimensionless
        ),
        spec.SingleBandRasterOutput(
            id="fl[YEAR]",
            path="intermediate_outputs/fl[YEAR].tif",
            about=gettext(
                "Forest loss in the year: 1 where baseline forest was lost in"
                " exactly this year, nodata elsewhere."
            ),
            data_type=int,
            units=u.dimensionless,
            created_if="yr_end > yr_str"
        ),
        spec.SingleBandRasterOutput(
            id="cb[YEAR]",
            path="intermediate_outputs/cb[YEAR].tif",
            about=gettext("Carbon stock of the forest in the year."),
            data_type=float,
            units=u.metric_ton / u.hectare
        ),
        spec.SingleBandRasterOutput(
            id="ce[YEAR]",
            path="intermediate_outputs/ce[YEAR].tif",
            about=gettext("CO2 emitted by forest lost in the year."),
            data_type=float,
            units=u.metric_ton / u.hectare,
            created_if="yr_end > yr_str"
        ),
        spec.SingleBandRasterOutput(
            id="ha_[BAND]",
            path="intermediate_outputs/ha_[BAND].tif",
            about=gettext(
                "A forest cover, forest loss, carbon stock or emissions"
                " raster multiplied by pixel area in hectares."
            ),
            data_type=float,
            units=u.hectare
        ),
        spec.TASKGRAPH_CACHE
    ]
)


def _split_fields(value):
    if not value:
        return None
    return [field.strip() for field in value.split(',') if field.strip()]


def execute(args):
    """Forest Carbon Change.

    Args:
        args['workspace_dir'] (string): a path to the directory that will
            write output and other temporary files during calculation.
        args['results_suffix'] (string): appended to any output file name.
        args['n_workers'] (int): (optional) The number of worker processes to
            use for processing this model. If omitted, computation will take
            place in the current process.
        args['regions_vector_path'] (string): path to a polygon vector of
            the regions to summarize.
        args['treecover_raster_path'] (string): path to a percent tree cover
            raster for the year 2000.
        args['lossyear_raster_path'] (string): path to a loss year raster
            coded as years since 2000, 0 for no loss.
        args['agb_raster_path'] (string): path to an above-ground biomass
            raster in t/ha.
        args['tree_cover_threshold'] (number): minimum percent tree cover of
            a forest pixel.
        args['yr_str'] (int): the baseline year.
        args['yr_end'] (int): the last year of the analysis.
        args['id_fields'] (string): (optional) comma-separated fields that
            identify regions in the results table.
        args['filter_field'] (string): (optional) field to select regions by.
        args['filter_value'] (string): (optional) value of ``filter_field``
            of the regions to keep.

    Returns:
        File registry dictionary mapping MODEL_SPEC output ids to absolute paths

    Raises:
        ConfigurationError if the year range or threshold cannot be used,
            before anything is written to the workspace.
    """
    forest_change.check_configuration(*(
        MODEL_SPEC.get_input(key).preprocess(args[key])
        for key in ('yr_str', 'yr_end', 'tree_cover_threshold')))

    args, file_registry, graph = MODEL_SPEC.setup(args)

    stats_rows = compute_forest_carbon_stats(
        regions_vector_path=args['regions_vector_path'],
        treecover_raster_path=args['treecover_raster_path'],
        lossyear_raster_path=args['lossyear_raster_path'],
        agb_raster_path=args['agb_raster_path'],
        yr_str=args['yr_str'],
        yr_end=args['yr_end'],
        tree_cover_threshold=args['tree_cover_threshold'],
        file_registry=file_registry,
        graph=graph,
        id_fields=_split_fields(args['id_fields']),
        filter_field=args['filter_field'],
        filter_value=args['filter_value'])

    id_fields = zonal.resolve_id_fields(
        validation.load_fields_from_vector(args['regions_vector_path']),
        _split_fields(args['id_fields']))
    graph.add_task(
        func=zonal.write_stats_csv,
        args=(stats_rows, id_fields,
              forest_change.expected_band_names(
                  args['yr_str'], args['yr_end']),
              file_registry['forest_change_stats']),
        target_path_list=[file_registry['forest_change_stats']],
        task_name='write stats table')

    graph.close()
    graph.join()
    LOGGER.info(
        f'Summarized {sum(1 for row in stats_rows if row.error is None)} of '
        f'{len(stats_rows)} regions')
    return file_registry.registry


def compute_forest_carbon_stats(
        regions_vector_path, treecover_raster_path, lossyear_raster_path,
        agb_raster_path, yr_str, yr_end, tree_cover_threshold,
        file_registry, graph, id_fields=None, filter_field=None,
        filter_value=None):
    """Compute per-region forest, loss, carbon and emissions statistics.

    Builds the task graph of every yearly raster and waits only for the
    zonal sums. The rasters are aligned to the grid of the tree cover
    raster with nearest-neighbor resampling, clipped to the regions.

    Args:
        regions_vector_path (string): path to a polygon vector.
        treecover_raster_path (string): path to the year 2000 percent tree
            cover raster.
        lossyear_raster_path (string): path to the loss year raster.
        agb_raster_path (string): path to the above-ground biomass raster.
        yr_str (int): the baseline year.
        yr_end (int): the last year of the analysis.
        tree_cover_threshold (number): minimum percent tree cover of a
            forest pixel.
        file_registry (FileRegistry): registry of this model's outputs.
        graph (taskgraph.TaskGraph): the graph to add tasks to.
        id_fields (list): fields that identify regions. See
            ``zonal.resolve_id_fields`` for the default.
        filter_field (string): optional field to select regions by.
        filter_value (string): value of ``filter_field`` to keep.

    Returns:
        list of ``zonal.StatsRow``, one per region, in the order of the
        regions vector.

    Raises:
        ConfigurationError if the year range, threshold or fields cannot
            be used.
        MissingBandError if a band expected in the stack was not built.
    """
    forest_change.check_configuration(yr_str, yr_end, tree_cover_threshold)
    treecover_info = pygeoprocessing.get_raster_info(treecover_raster_path)
    target_projection_wkt = treecover_info['projection_wkt']

    regions, id_fields = zonal.load_regions(
        regions_vector_path, target_projection_wkt, id_fields=id_fields,
        filter_field=filter_field, filter_value=filter_value)
    band_names = forest_change.expected_band_names(yr_str, yr_end)
    if not any(region.error is None for region in regions):
        LOGGER.warning(
            'No region has a usable geometry; no rasters were computed')
        return zonal.build_stats_rows(regions, {}, band_names)

    aggregation_vector_task = graph.add_task(
        func=zonal.write_aggregation_vector,
        args=(regions_vector_path,
              [region.fid for region in regions if region.error is None],
              target_projection_wkt, file_registry['aggregation_regions']),
        target_path_list=[file_registry['aggregation_regions']],
        task_name='write aggregation regions')

    LOGGER.info('Aligning rasters to the tree cover grid')
    aligned_paths = [
        file_registry['aligned_treecover'],
        file_registry['aligned_lossyear'],
        file_registry['aligned_agb']]
    align_task = graph.add_task(
        func=pygeoprocessing.align_and_resize_raster_stack,
        args=([treecover_raster_path, lossyear_raster_path, agb_raster_path],
              aligned_paths,
              ['near', 'near', 'near'],
              treecover_info['pixel_size'],
              'intersection'),
        kwargs={
            'base_vector_path_list': [file_registry['aggregation_regions']],
            'raster_align_index': 0,
            'target_projection_wkt': target_projection_wkt},
        target_path_list=aligned_paths,
        dependent_task_list=[aggregation_vector_task],
        task_name='align rasters')
    treecover, lossyear, agb = (
        raster_stack.LazyRaster(path, align_task) for path in aligned_paths)

    pixel_area = raster_stack.add_raster_task(
        graph, raster_stack.calculate_pixel_area,
        (treecover.path, file_registry['pixel_area']),
        file_registry['pixel_area'], inputs=[treecover],
        task_name='pixel area')

    LOGGER.info('Deriving carbon and CO2 from above-ground biomass')
    bgb = raster_stack.add_raster_task(
        graph, biomass.calculate_below_ground_biomass,
        (agb.path, file_registry['below_ground_biomass']),
        file_registry['below_ground_biomass'], inputs=[agb],
        task_name='below-ground biomass')
    total_carbon = raster_stack.add_raster_task(
        graph, biomass.calculate_total_carbon,
        (agb.path, bgb.path, file_registry['total_carbon']),
        file_registry['total_carbon'], inputs=[agb, bgb],
        task_name='total carbon')
    total_co2 = raster_stack.add_raster_task(
        graph, biomass.calculate_total_co2,
        (total_carbon.path, file_registry['total_co2']),
        file_registry['total_co2'], inputs=[total_carbon],
        task_name='total CO2')

    LOGGER.info(f'Building forest change rasters for {yr_str}-{yr_end}')
    baseline = forest_change.baseline_forest_mask(
        graph, treecover, lossyear, tree_cover_threshold, yr_str,
        file_registry['fc[YEAR]', yr_str])
    loss = forest_change.annual_loss(
        graph, baseline, lossyear, yr_str, yr_end,
        lambda year: file_registry['fl[YEAR]', year])
    cover = forest_change.propagate_forest_cover(
        graph, baseline, loss, yr_str, yr_end,
        lambda year: file_registry['fc[YEAR]', year])
    stock = forest_change.carbon_stock(
        graph, total_carbon, cover, yr_str, yr_end,
        lambda year: file_registry['cb[YEAR]', year])
    emitted = forest_change.emissions(
        graph, total_co2, loss, yr_str, yr_end,
        lambda year: file_registry['ce[YEAR]', year])

    if yr_end > yr_str:
        baseline_mask = baseline[forest_change.band_name(
            forest_change.FOREST_COVER, yr_str)]
        raster_stack.add_raster_task(
            graph, forest_change.calculate_loss_period,
            (baseline_mask.path, lossyear.path, yr_str, yr_end,
             file_registry['loss_period']),
            file_registry['loss_period'], inputs=[baseline_mask, lossyear],
            task_name='loss period')

    weighted = raster_stack.weight_stack_by_pixel_area(
        graph, cover.concat(loss, stock, emitted), pixel_area,
        lambda band: file_registry['ha_[BAND]', band])
    weighted = weighted.select(band_names)
    raster_stack.materialize(
        graph, weighted, file_registry['hectare_weighted_stack'])

    LOGGER.info(f'Summing {len(band_names)} bands over the regions')
    zonal_sums_task = graph.add_task(
        func=zonal.zonal_sums,
        args=(weighted.paths, band_names,
              file_registry['aggregation_regions']),
        dependent_task_list=weighted.tasks + [aggregation_vector_task],
        store_result=True,
        task_name='zonal sums')
    return zonal.build_stats_rows(
        regions, zonal_sums_task.get(), band_names)


@validation.args_validator
def validate(args, limit_to=None):
    """Validate args to ensure they conform to `execute`'s contract.

    Args:
        args (dict): dictionary of key(str)/value pairs where keys and
            values are specified in `execute` docstring.
        limit_to (str): (optional) if not None indicates that validation
            should only occur on the args[limit_to] value. The intent that
            individual key validation could be significantly less expensive
            than validating the entire `args` dictionary.

    Returns:
        list of ([invalid key_a, invalid_keyb, ...], 'warning/error message')
            tuples. Where an entry indicates that the invalid keys caused
            the error message in the second part of the tuple. This should
            be an empty list if validation succeeds.
    """
    validation_warnings = validation.validate(args, MODEL_SPEC)
    invalid_keys = validation.get_invalid_keys(validation_warnings)

    if (not {'yr_str', 'yr_end'} & invalid_keys and
            args.get('yr_str') not in ('', None) and
            args.get('yr_end') not in ('', None)):
        yr_str = MODEL_SPEC.get_input('yr_str').preprocess(args['yr_str'])
        yr_end = MODEL_SPEC.get_input('yr_end').preprocess(args['yr_end'])
        if yr_end < yr_str:
            validation_warnings.append((
                ['yr_end', 'yr_str'],
                validation.get_message('YEAR_ORDER').format(
                    yr_str=yr_str, yr_end=yr_end)))

    if ('regions_vector_path' not in invalid_keys and
            args.get('regions_vector_path') not in ('', None)):
        fieldnames = validation.load_fields_from_vector(
            args['regions_vector_path'])
        requested_fields = {
            'id_fields': _split_fields(args.get('id_fields')) or [],
            'filter_field': (
                [args['filter_field']] if args.get('filter_field') else [])}
        for key, fields in requested_fields.items():
            for field in fields:
                if field not in fieldnames:
                    validation_warnings.append((
                        [key],
                        validation.get_message('FIELD_NOT_FOUND').format(
                            field=field)))

    return sorted(validation_warnings, key=lambda w: w[0][0])
