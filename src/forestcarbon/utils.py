"""Logging, GDAL and expression helpers shared by the forestcarbon modules."""
import ast
import contextlib
import logging
import os
import time
from datetime import datetime

import forestcarbon
from osgeo import gdal
from osgeo import osr


LOGGER = logging.getLogger(__name__)
_OSGEO_LOGGER = logging.getLogger('osgeo')
LOG_FMT = (
    "%(asctime)s "
    "(%(name)s) "
    "%(module)s.%(funcName)s(%(lineno)d) "
    "%(levelname)s %(message)s")

# python logging has no level between CE_None and CE_Debug, so INFO is unused
GDAL_ERROR_LEVELS = {
    gdal.CE_None: logging.NOTSET,
    gdal.CE_Debug: logging.DEBUG,
    gdal.CE_Warning: logging.WARNING,
    gdal.CE_Failure: logging.ERROR,
    gdal.CE_Fatal: logging.CRITICAL,
}

# coordinates are always (x, y) == (lon, lat), also for GDAL >= 3
DEFAULT_OSR_AXIS_MAPPING_STRATEGY = osr.OAMS_TRADITIONAL_GIS_ORDER


def _log_gdal_errors(*args, **kwargs):
    """GDAL error handler that forwards messages to the ``osgeo`` logger.

    Exceptions are enabled while the models run, but GDAL still reports
    warnings, such as invalid geometries, through its error handler. The
    GDAL error class picks the python log level.

    The handler expects ``(err_level, err_no, err_msg)``, positionally or by
    keyword. Any other call is logged as an error and otherwise ignored.
    """
    names = ('err_level', 'err_no', 'err_msg')
    if len(args) + len(kwargs) != len(names):
        LOGGER.error(
            '_log_gdal_errors was called with an incorrect number of '
            f'arguments.  args: {args}, kwargs: {kwargs}')
        return
    gdal_args = dict(zip(names, args))
    gdal_args.update(kwargs)
    if set(gdal_args) != set(names):
        LOGGER.error(
            f'_log_gdal_errors was called with unexpected arguments. '
            f'args: {args}, kwargs: {kwargs}')
        return

    err_msg = gdal_args['err_msg'].replace('\n', '')
    _OSGEO_LOGGER.log(
        level=GDAL_ERROR_LEVELS[gdal_args['err_level']],
        msg=f'[errno {gdal_args["err_no"]}] {err_msg}')


@contextlib.contextmanager
def capture_gdal_logging():
    """Send GDAL messages to the ``osgeo`` logger within this context."""
    gdal.PushErrorHandler(_log_gdal_errors)
    try:
        yield
    finally:
        gdal.PopErrorHandler()


def _format_time(seconds):
    """Format a duration as ``'1h 1m 7s'``, ``'1m 7s'`` or ``'7s'``."""
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    hours = int(hours)
    minutes = int(minutes)

    if hours:
        return f'{hours}h {minutes}m {seconds}s'
    if minutes:
        return f'{minutes}m {seconds}s'
    return f'{seconds}s'


@contextlib.contextmanager
def prepare_workspace(
        workspace, model_id, logging_level=logging.NOTSET, exclude_threads=None):
    """Create the workspace and log everything within the context to a file.

    The logfile is written to
    ``<workspace>/forestcarbon-<model_id>-log-<timestamp>.txt``. GDAL
    messages and python warnings are captured into the same file and the
    elapsed time is logged when the context exits.

    Args:
        workspace (string): path to the workspace directory. Created if it
            does not exist.
        model_id (string): the id of the model being run.
        logging_level (int): the threshold for the logfile handler.
        exclude_threads (list): thread names to exclude from the logfile.

    Yields:
        ``None``
    """
    os.makedirs(workspace, exist_ok=True)
    logfile = os.path.join(
        workspace,
        f'forestcarbon-{model_id}-log-'
        f'{datetime.now().strftime("%Y-%m-%d--%H_%M_%S")}.txt')

    with capture_gdal_logging(), log_to_file(
            logfile, exclude_threads=exclude_threads,
            logging_level=logging_level):
        logging.captureWarnings(True)
        LOGGER.log(100, f'Writing log messages to [{logfile}]')
        start_time = time.time()
        try:
            yield
        except Exception:
            LOGGER.exception(f'Exception while executing {model_id}')
            raise
        finally:
            LOGGER.info(
                f'Elapsed time: {_format_time(round(time.time() - start_time, 2))}')
            logging.captureWarnings(False)
            LOGGER.info(
                f'Execution finished; version: {forestcarbon.__version__}')


class ThreadFilter(logging.Filter):
    """Drop the records logged from one named thread."""

    def __init__(self, thread_name):
        logging.Filter.__init__(self)
        self.thread_name = thread_name

    def filter(self, record):
        return record.threadName != self.thread_name


@contextlib.contextmanager
def log_to_file(logfile, exclude_threads=None, logging_level=logging.NOTSET,
                log_fmt=LOG_FMT, date_fmt=None):
    """Attach a file handler to the root logger within this context.

    Args:
        logfile (string): path of the logfile. An existing file is
            overwritten.
        exclude_threads (list): names of threads whose records are left out.
            Records from every thread are kept if ``None``.
        logging_level (int): threshold of the file handler.
        log_fmt (string): record format.
        date_fmt (string): ``asctime`` format. ISO8601 if ``None``.

    Yields:
        the ``logging.FileHandler`` writing to ``logfile``.
    """
    if os.path.exists(logfile):
        LOGGER.warning(f'Logfile {logfile} exists and will be overwritten')

    handler = logging.FileHandler(logfile, 'w', encoding='UTF-8')
    handler.setFormatter(logging.Formatter(log_fmt, date_fmt))
    handler.setLevel(logging_level)
    for thread_name in exclude_threads or []:
        handler.addFilter(ThreadFilter(thread_name))

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.NOTSET)
    root_logger.addHandler(handler)
    try:
        yield handler
    finally:
        handler.close()
        root_logger.removeHandler(handler)


def is_gdal_virtual_path(path):
    """Whether ``path`` points into one of GDAL's virtual filesystems."""
    return str(path).startswith('/vsi')


def square_pixel_area(pixel_size_tuple, linear_units=1.0):
    """Area of a pixel in square meters for a projected raster.

    Args:
        pixel_size_tuple (tuple): the (x, y) pixel size in projected units.
        linear_units (float): meters per projected unit.

    Returns:
        float area of one pixel in square meters.
    """
    x_size, y_size = pixel_size_tuple
    return abs(x_size * y_size) * linear_units ** 2


def create_coordinate_transformer(
        base_ref, target_ref,
        osr_axis_mapping_strategy=DEFAULT_OSR_AXIS_MAPPING_STRATEGY):
    """Build an OSR transformation between two spatial references.

    The references are copied before the axis mapping strategy is set, so
    the caller's objects are left unchanged.

    Args:
        base_ref (osr.SpatialReference): source reference.
        target_ref (osr.SpatialReference): target reference.
        osr_axis_mapping_strategy (int): axis mapping strategy for both
            copies.

    Returns:
        ``osr.CoordinateTransformation``
    """
    copies = []
    for ref in (base_ref, target_ref):
        ref_copy = osr.SpatialReference()
        ref_copy.ImportFromWkt(ref.ExportToWkt())
        ref_copy.SetAxisMappingStrategy(osr_axis_mapping_strategy)
        copies.append(ref_copy)
    return osr.CreateCoordinateTransformation(*copies)


def evaluate_expression(expression, variable_map):
    """Evaluate a ``required``, ``allowed`` or value expression.

    Args:
        expression (string): a python expression, such as
            ``"(value >= 2000) & (value <= 2024)"`` or ``"filter_field"``.
        variable_map (dict): values of the names used in ``expression``.

    Returns:
        the value of the expression

    Raises:
        AssertionError if ``expression`` uses a name that is neither in
        ``variable_map`` nor a builtin.
    """
    # __builtins__ is a module in __main__ and a dict elsewhere
    builtins = (__builtins__ if isinstance(__builtins__, dict)
                else __builtins__.__dict__)

    names = {node.id for node in ast.walk(ast.parse(expression))
             if isinstance(node, ast.Name)}
    missing_symbols = names - set(variable_map) - set(builtins)
    if missing_symbols:
        raise AssertionError(
            f'Identifiers expected in the expression "{expression}" are '
            f'missing: {", ".join(sorted(missing_symbols))}')

    # expressions only come from model specs, never from user input
    return eval(expression, builtins, variable_map)


def format_args_dict(args_dict, model_id):
    """Format args as two left-aligned columns, sorted by key.

    The header line names the model and the package version, so that
    ``datastack.extract_parameters_from_logfile`` can find the args again.

    Args:
        args_dict (dict): the args to format.
        model_id (string): the model id, e.g. ``forest_carbon``.

    Returns:
        string ending in a newline
    """
    sorted_args = sorted(args_dict.items())
    key_width = max((len(key) for key, _ in sorted_args), default=0)
    args_string = '\n'.join(
        f'{key:<{key_width}} {value}' for key, value in sorted_args)
    return (
        f"Arguments for forestcarbon {model_id} {forestcarbon.__version__}:"
        f"\n{args_string}\n")
