"""Validation of model args against a ``ModelSpec``."""
import importlib
import inspect
import logging
import pprint

import numpy
import pygeoprocessing
from osgeo import gdal
from osgeo import osr

from . import gettext
from . import utils

LOGGER = logging.getLogger(__name__)

MESSAGES = {
    'MISSING_KEY': gettext('Key is missing from the args dict'),
    'MISSING_VALUE': gettext('Input is required but has no value'),
    'NOT_A_NUMBER': gettext(
        'Value "{value}" could not be interpreted as a number'),
    'UNEXPECTED_ERROR': gettext('An unexpected error occurred in validation'),
    'DIR_NOT_FOUND': gettext('Directory not found'),
    'NOT_A_DIR': gettext('Path must be a directory'),
    'FILE_NOT_FOUND': gettext('File not found'),
    'INVALID_PROJECTION': gettext('Dataset must have a valid projection.'),
    'NOT_GDAL_RASTER': gettext('File could not be opened as a GDAL raster'),
    'NOT_GDAL_VECTOR': gettext('File could not be opened as a GDAL vector'),
    'REGEXP_MISMATCH': gettext(
        "Value did not match expected pattern {regexp}"),
    'INVALID_VALUE': gettext('Value does not meet condition {condition}'),
    'NOT_AN_INTEGER': gettext('Value "{value}" does not represent an integer'),
    'NO_PROJECTION': gettext('Spatial file {filepath} has no projection'),
    'BBOX_NOT_INTERSECT': gettext(
        'Not all of the spatial layers overlap each '
        'other. All bounding boxes must intersect: {bboxes}'),
    'NEED_PERMISSION_DIRECTORY': gettext(
        'You must have {permission} access to this directory'),
    'NEED_PERMISSION_FILE': gettext(
        'You must have {permission} access to this file'),
    'WRONG_GEOM_TYPE': gettext('Geometry type must be one of {allowed}'),
    'YEAR_ORDER': gettext(
        'The end year ({yr_end}) must not be earlier than the '
        'start year ({yr_str})'),
    'FIELD_NOT_FOUND': gettext(
        'Field "{field}" was not found in the regions vector'),
}


def get_message(key):
    return gettext(MESSAGES[key])


def get_invalid_keys(validation_warnings):
    """Collect every args key named in a list of validation warnings.

    Args:
        validation_warnings (list): ``(keys, message)`` tuples, as returned
            by ``validate``.

    Returns:
        set of args keys
    """
    invalid_keys = set()
    for affected_keys, _ in validation_warnings:
        invalid_keys.update(affected_keys)
    return invalid_keys


def load_fields_from_vector(filepath, layer_id=0):
    """List the field names of a vector layer.

    Args:
        filepath (string): path to a GDAL vector.
        layer_id (string or int): layer name or index. Defaults to the
            first layer.

    Returns:
        list of field names, in layer order.
    """
    vector = gdal.OpenEx(filepath, gdal.OF_VECTOR)
    layer = vector.GetLayer(layer_id)
    fieldnames = [defn.GetName() for defn in layer.schema]
    layer = None
    vector = None
    return fieldnames


def check_spatial_overlap(spatial_filepaths_list,
                          different_projections_ok=False):
    """Check that the bounding boxes of some spatial files intersect.

    Args:
        spatial_filepaths_list (list): paths to GDAL rasters or vectors.
        different_projections_ok (bool): if True, every bounding box is
            transformed to WGS84 before comparing. Otherwise the boxes are
            compared as they are.

    Returns:
        A string error message, or ``None`` if all the boxes intersect.
    """
    wgs84_srs = osr.SpatialReference()
    wgs84_srs.ImportFromEPSG(4326)
    wgs84_wkt = wgs84_srs.ExportToWkt()

    bounding_boxes = []
    checked_file_list = []
    for filepath in spatial_filepaths_list:
        try:
            info = pygeoprocessing.get_raster_info(filepath)
        except (ValueError, RuntimeError):
            info = pygeoprocessing.get_vector_info(filepath)

        if info['projection_wkt'] is None:
            return get_message('NO_PROJECTION').format(filepath=filepath)

        bounding_box = info['bounding_box']
        if different_projections_ok:
            try:
                bounding_box = pygeoprocessing.transform_bounding_box(
                    bounding_box, info['projection_wkt'], wgs84_wkt)
            except (ValueError, RuntimeError) as err:
                LOGGER.debug(err)
                LOGGER.warning(
                    f'Not checking overlap of {filepath}: its bounding box '
                    'could not be transformed to EPSG:4326')
                continue

        if all(numpy.isinf(coord) for coord in bounding_box):
            LOGGER.warning(
                f'Not checking overlap of {filepath}: infinite bounding '
                f'box {bounding_box}')
            continue

        bounding_boxes.append(bounding_box)
        checked_file_list.append(filepath)

    try:
        pygeoprocessing.merge_bounding_box_list(bounding_boxes, 'intersection')
    except ValueError as error:
        LOGGER.debug(error)
        return get_message('BBOX_NOT_INTERSECT').format(
            bboxes=_format_bbox_list(checked_file_list, bounding_boxes))
    return None


def _format_bbox_list(file_list, bbox_list):
    """Join paths and their bounding boxes into one string."""
    return ' | '.join(
        f'{path}: {bbox}' for path, bbox in zip(file_list, bbox_list))


def _evaluate_condition(condition, expression_values):
    """Resolve a ``required`` or ``allowed`` attribute to a bool."""
    if isinstance(condition, str):
        return bool(utils.evaluate_expression(
            expression=condition, variable_map=expression_values))
    return condition


def validate(args, model_spec):
    """Validate an args dict against a model spec.

    Checks run in three passes:

        1. every required input has a key and a non-empty value.
        2. every given, enabled value passes its input's ``validate``.
        3. the spatial inputs that passed overlap each other.

    Args:
        args (dict): the model args.
        model_spec (ModelSpec): the model's spec.

    Returns:
        list of ``(keys, message)`` tuples sorted by first key, empty if
        the args are valid.
    """
    validation_warnings = []

    missing_keys = set()
    required_keys_with_no_value = set()
    expression_values = {
        input_spec.id: args.get(input_spec.id, False)
        for input_spec in model_spec.inputs}
    keys_with_falsey_values = set()
    for parameter_spec in model_spec.inputs:
        key = parameter_spec.id
        if _evaluate_condition(parameter_spec.required, expression_values):
            if key not in args:
                missing_keys.add(key)
            elif args[key] in ('', None):
                required_keys_with_no_value.add(key)
        elif not expression_values[key]:
            # optional and empty, so there is nothing to check
            keys_with_falsey_values.add(key)

    if missing_keys:
        validation_warnings.append(
            (sorted(missing_keys), get_message('MISSING_KEY')))

    if required_keys_with_no_value:
        validation_warnings.append(
            (sorted(required_keys_with_no_value), get_message('MISSING_VALUE')))

    enabled = args_enabled(args, model_spec)
    invalid_keys = set()
    insufficient_keys = (
        missing_keys | required_keys_with_no_value | keys_with_falsey_values)
    for key in set(args.keys()) - insufficient_keys:
        try:
            parameter_spec = model_spec.get_input(key)
        except KeyError:
            LOGGER.debug(f'Provided key {key} does not exist in MODEL_SPEC')
            continue
        if not enabled[key]:
            LOGGER.debug(f'Key {key} is disabled, its value is ignored')
            continue

        try:
            warning_msg = parameter_spec.validate(args[key])
        except Exception:
            LOGGER.exception(
                f'Error when validating key {key} with value {args[key]}')
            warning_msg = get_message('UNEXPECTED_ERROR')
        if warning_msg:
            validation_warnings.append(([key], warning_msg))
            invalid_keys.add(key)

    if model_spec.validate_spatial_overlap:
        if isinstance(model_spec.validate_spatial_overlap, list):
            spatial_keys = set(model_spec.validate_spatial_overlap)
        else:
            spatial_keys = {
                i.id for i in model_spec.inputs
                if i.type in ('raster', 'vector')}

        # overlap is only meaningful between inputs that are otherwise valid
        valid_spatial_keys = sorted(
            key for key in spatial_keys - invalid_keys - insufficient_keys
            if args.get(key) not in ('', None))

        if len(valid_spatial_keys) >= 2:
            spatial_overlap_error = check_spatial_overlap(
                [args[key] for key in valid_spatial_keys],
                model_spec.different_projections_ok)
            if spatial_overlap_error:
                validation_warnings.append(
                    (valid_spatial_keys, spatial_overlap_error))

    return sorted(validation_warnings, key=lambda w: w[0][0])


def args_validator(validate_func):
    """Decorator for a model's ``validate(args, limit_to=None)``.

    Checks that ``args`` is a dict with string keys and that ``limit_to``
    is ``None`` or one of those keys. When ``limit_to`` is given, only that
    input is checked against the ``MODEL_SPEC`` of the function's module
    and ``validate_func`` is not called.

    Raises:
        AssertionError if the arguments or the decorated function's
        signature are malformed.

    Example::

        from forestcarbon import validation
        @validation.args_validator
        def validate(args, limit_to=None):
            return validation.validate(args, MODEL_SPEC)
    """
    def _wrapped_validate_func(args, limit_to=None):
        validate_func_args = inspect.getfullargspec(validate_func)
        assert validate_func_args.args == ['args', 'limit_to'], (
            f'validate has invalid parameters: {validate_func_args.args}')

        assert isinstance(args, dict), 'args parameter must be a dictionary.'
        assert limit_to is None or isinstance(limit_to, str), (
            'limit_to parameter must be either a string key or None.')
        if limit_to is not None:
            assert limit_to in args, (
                f'limit_to key "{limit_to}" must exist in args.')
        assert all(isinstance(key, str) for key in args), (
            'All args keys must be strings.')

        if limit_to is None:
            LOGGER.info('Starting whole-model validation with MODEL_SPEC')
            warnings_ = validate_func(args)
        else:
            LOGGER.info('Starting single-input validation with MODEL_SPEC')
            model_module = importlib.import_module(validate_func.__module__)
            args_key_spec = model_module.MODEL_SPEC.get_input(limit_to)

            args_value = args[limit_to]
            error_msg = None
            # conditional requirements need the other args, so only an
            # unconditional requirement is checked here
            if args_key_spec.required is True and args_value in ('', None):
                error_msg = get_message('MISSING_VALUE')
            if args_value not in ('', None):
                error_msg = args_key_spec.validate(args_value)

            warnings_ = [] if error_msg is None else [([limit_to], error_msg)]

        LOGGER.debug(f'Validation warnings: {pprint.pformat(warnings_)}')
        return warnings_

    return _wrapped_validate_func


def args_enabled(args, model_spec):
    """Decide which inputs are enabled, from their ``allowed`` attribute.

    Args:
        args (dict): the model args.
        model_spec (ModelSpec): the model's spec.

    Returns:
        dict mapping each input id to True if it is enabled.
    """
    expression_values = {
        arg_spec.id: args.get(arg_spec.id, False)
        for arg_spec in model_spec.inputs}
    return {
        arg_spec.id: _evaluate_condition(arg_spec.allowed, expression_values)
        for arg_spec in model_spec.inputs}
