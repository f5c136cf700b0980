"""Declarative description of a model's inputs and outputs.

A model describes its args and the files it writes with the pydantic
classes in this module. The same description drives validation, argument
preprocessing, the output file registry and the ``getspec`` command.
"""
import contextlib
import importlib
import json
import logging
import os
import queue
import re
import threading
import types
import typing
import warnings

from osgeo import gdal
from osgeo import ogr
from osgeo import osr
import pint
from pygeoprocessing.geoprocessing_core import GDALUseExceptions
from pydantic import BaseModel, ConfigDict, field_validator, model_validator
import taskgraph

from .file_registry import FileRegistry
from . import utils
from .validation import get_message
from . import gettext
from .unit_registry import u


LOGGER = logging.getLogger(__name__)

GEOMETRY_TYPES = {
    'POLYGON': {ogr.wkbPolygon, ogr.wkbPolygonM, ogr.wkbPolygonZM,
                ogr.wkbPolygon25D},
    'MULTIPOLYGON': {ogr.wkbMultiPolygon, ogr.wkbMultiPolygonM,
                     ogr.wkbMultiPolygonZM, ogr.wkbMultiPolygon25D},
}


def timeout(func, timeout=5):
    """Run a file check in a thread and give up after ``timeout`` seconds.

    Rasters on a network drive or behind ``/vsicurl/`` can take a long time
    to open. When the check does not finish in time a warning is issued and
    the input is treated as valid.

    Args:
        func (function): the check to run. Its second positional argument
            is the path being checked.
        timeout (number): seconds to wait for the check. Defaults to 5.

    Returns:
        the wrapped function
    """
    message_queue = queue.Queue()

    def wrapper(*args, **kwargs):
        thread = threading.Thread(
            target=lambda: message_queue.put(func(*args, **kwargs)))
        LOGGER.debug(f'Checking {args[1]} with a {timeout}s timeout')
        thread.start()
        thread.join(timeout=timeout)
        if thread.is_alive():
            warnings.warn(
                f'Validation of {args[1]} timed out. A remote or network '
                'file may be slow to read; copying it locally will help.')
            return None
        return message_queue.get()

    return wrapper


def _check_srs(srs):
    """Return an error message if ``srs`` is missing or empty."""
    with GDALUseExceptions():
        if srs is None or srs.IsSame(osr.SpatialReference()):
            return get_message('INVALID_PROJECTION')
    return None


def _check_file(filepath):
    """Return an error message if ``filepath`` is missing or unreadable."""
    if not os.path.exists(filepath):
        return get_message('FILE_NOT_FOUND')
    if not os.access(filepath, os.R_OK):
        return get_message('NEED_PERMISSION_FILE').format(permission='read')
    return None


class Input(BaseModel):
    """One arg of a model.

    An ``Input`` describes an arg, not the value given for it in a run.
    """
    # pint units are not pydantic models
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    """Key of the arg in the args dict."""

    name: typing.Union[str, None] = None
    """Short lower-case name shown to users."""

    about: typing.Union[str, None] = None
    """Description shown to users."""

    required: typing.Union[bool, str] = True
    """True, False, or an expression over the other args, such as
    ``"filter_field"``, that decides whether a value must be given."""

    allowed: typing.Union[bool, str] = True
    """True, or an expression over the other args that decides whether a
    value may be given at all."""

    hidden: bool = False
    """Hidden args are left out of ``input_field_order``."""

    def preprocess(self, value):
        """Convert a raw arg value to the type ``execute`` works with."""
        return value


class Output(BaseModel):
    """One result of a model."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    about: typing.Union[str, None] = None

    created_if: typing.Union[bool, str] = True
    """True, or an expression over the args that decides whether the output
    is written in a run."""


class FileInput(Input):
    """A path to a readable file."""
    type: typing.ClassVar[str] = 'file'

    @timeout
    def validate(self, filepath: str):
        """Check that ``filepath`` exists and can be read.

        Returns:
            A string error message, or ``None`` if the file is usable.
        """
        return _check_file(filepath)


class SpatialFileInput(FileInput):
    """Base class of the raster and vector inputs."""

    def preprocess(self, value):
        """Make a local path absolute. GDAL virtual paths are kept as is.

        Empty values become ``None``.
        """
        if not value:
            return None
        if utils.is_gdal_virtual_path(value):
            return value
        return os.path.abspath(value)

    def _open(self, filepath, open_flag, error_key):
        """Open a dataset, or return an error message if it can't be opened.

        Returns:
            a ``(dataset, message)`` tuple, one of which is ``None``.
        """
        if not utils.is_gdal_virtual_path(filepath):
            file_warning = _check_file(filepath)
            if file_warning:
                return None, file_warning
        try:
            return gdal.OpenEx(filepath, open_flag), None
        except RuntimeError:
            return None, get_message(error_key)


class SingleBandRasterInput(SpatialFileInput):
    """A raster of which only the first band is read."""
    data_type: typing.Type = float
    """``float`` or ``int``."""

    units: typing.Union[pint.Unit, None]
    """Units of the pixel values."""

    type: typing.ClassVar[str] = 'raster'

    @timeout
    def validate(self, filepath: str):
        """Check that ``filepath`` is a GDAL raster with a spatial reference.

        Returns:
            A string error message, or ``None`` if the raster is usable.
        """
        with GDALUseExceptions():
            raster, message = self._open(
                filepath, gdal.OF_RASTER, 'NOT_GDAL_RASTER')
            if message:
                return message
            return _check_srs(raster.GetSpatialRef())


class VectorInput(SpatialFileInput):
    """A vector of which only the first layer is read."""
    geometry_types: set
    """Allowed layer geometry types, keys of ``GEOMETRY_TYPES``."""

    type: typing.ClassVar[str] = 'vector'

    @field_validator('geometry_types', mode='after')
    @classmethod
    def check_geometry_types(cls, geometry_types: set) -> set:
        unknown = set(geometry_types) - set(GEOMETRY_TYPES)
        if unknown:
            raise ValueError(f'Unknown geometry types {sorted(unknown)}')
        return geometry_types

    @timeout
    def validate(self, filepath: str):
        """Check the layer geometry type and spatial reference.

        Only the declared layer type is checked here. The geometry of each
        feature is checked when the regions are loaded.

        Returns:
            A string error message, or ``None`` if the vector is usable.
        """
        with GDALUseExceptions():
            vector, message = self._open(
                filepath, gdal.OF_VECTOR, 'NOT_GDAL_VECTOR')
            if message:
                return message

            layer = vector.GetLayer()
            allowed = set().union(
                *[GEOMETRY_TYPES[geom] for geom in self.geometry_types])
            if layer.GetGeomType() not in allowed:
                return get_message('WRONG_GEOM_TYPE').format(
                    allowed=self.geometry_types)
            return _check_srs(layer.GetSpatialRef())


class DirectoryInput(Input):
    """A directory, such as the workspace."""
    contents: list[Input]

    must_exist: bool = True
    """False if the directory is created by the model."""

    writable: bool = False
    """Whether files must be creatable in the directory. For a directory
    that does not exist yet, its nearest existing parent is checked."""

    type: typing.ClassVar[str] = 'directory'

    @timeout
    def validate(self, dirpath: str):
        """Check that ``dirpath`` is a directory, or can become one.

        Returns:
            A string error message, or ``None`` if the directory is usable.
        """
        if os.path.exists(dirpath):
            if not os.path.isdir(dirpath):
                return get_message('NOT_A_DIR')
        elif self.must_exist:
            return get_message('DIR_NOT_FOUND')
        else:
            # walk up to the first parent that exists
            dirpath = os.path.normcase(os.path.abspath(dirpath))
            while not os.path.exists(dirpath):
                parent = os.path.dirname(dirpath)
                if parent == dirpath:
                    break
                dirpath = parent

        if self.writable:
            probe_path = os.path.join(dirpath, '.forestcarbon_write_check')
            try:
                with open(probe_path, 'w'):
                    pass
                os.remove(probe_path)
            except OSError:
                return get_message('NEED_PERMISSION_DIRECTORY').format(
                    permission='write')
        return None


class NumberInput(Input):
    """A real number, optionally restricted by an expression."""
    units: typing.Union[pint.Unit, None]

    expression: typing.Union[str, None] = None
    """Boolean expression of ``value`` that the number must satisfy, for
    example ``"(value >= 0) & (value <= 100)"``."""

    type: typing.ClassVar[str] = 'number'

    @field_validator('expression', mode='after')
    @classmethod
    def check_expression(cls, expression):
        if expression is not None and 'value' not in expression:
            raise ValueError(
                f'Expression {expression} does not mention "value"')
        return expression

    def validate(self, value):
        """Check that ``value`` is a number meeting ``expression``.

        Returns:
            A string error message, or ``None`` if the value is usable.
        """
        try:
            number = float(value)
        except (TypeError, ValueError):
            return get_message('NOT_A_NUMBER').format(value=value)

        if self.expression and not utils.evaluate_expression(
                self.expression, {'value': number}):
            return get_message('INVALID_VALUE').format(
                condition=self.expression)
        return None

    def preprocess(self, value):
        return None if value in {None, ''} else float(value)


class IntegerInput(NumberInput):
    """A whole number, such as a calendar year."""
    units: typing.Union[pint.Unit, None] = None

    type: typing.ClassVar[str] = 'integer'

    def validate(self, value):
        # "2001.5" is reported as not an integer rather than as out of range
        try:
            as_float = float(value)
        except (TypeError, ValueError):
            return get_message('NOT_A_NUMBER').format(value=value)
        if not as_float.is_integer():
            return get_message('NOT_AN_INTEGER').format(value=value)
        return super().validate(value)

    def preprocess(self, value):
        # "2000.0" and 2000.0 both become 2000
        return None if value in {None, ''} else int(float(value))


class NWorkersInput(IntegerInput):
    """The taskgraph ``n_workers`` arg. Missing means synchronous."""

    def preprocess(self, value):
        if value in {None, ''}:
            return -1
        return super().preprocess(value)


class PercentInput(NumberInput):
    """A percentage from 0 to 100.

    The range is only enforced through ``expression``.
    """
    units: typing.ClassVar[None] = None

    type: typing.ClassVar[str] = 'percent'


class StringInput(Input):
    """Free text, optionally restricted by a regular expression."""
    regexp: typing.Union[str, None] = None
    """Pattern the whole value must match."""

    type: typing.ClassVar[str] = 'string'

    @field_validator('regexp', mode='after')
    @classmethod
    def check_regexp(cls, regexp: typing.Union[str, None]) -> typing.Union[str, None]:
        if regexp is not None:
            try:
                re.compile(regexp)
            except re.error as error:
                raise ValueError(f'Invalid regexp {regexp}: {error}')
        return regexp

    def validate(self, value):
        """Check ``value`` against ``regexp``.

        Returns:
            A string error message, or ``None`` if the value is usable.
        """
        if self.regexp and not re.fullmatch(self.regexp, str(value)):
            return get_message('REGEXP_MISMATCH').format(regexp=self.regexp)
        return None

    def preprocess(self, value):
        return None if value in {None, ''} else str(value)


class ResultsSuffixInput(StringInput):
    """The results suffix. A missing suffix becomes ``''`` and a given one
    always starts with an underscore."""

    def preprocess(self, value):
        value = super().preprocess(value)
        if value is None:
            return ''
        if not value.startswith('_'):
            value = '_' + value
        return value


class FileOutput(Output):
    """A file written by the model."""
    path: str
    """Path relative to the workspace, before the suffix is added.
    Square brackets mark a pattern such as ``fc[YEAR].tif``."""


class SingleBandRasterOutput(FileOutput):
    data_type: typing.Type = float
    units: typing.Union[pint.Unit, None] = None


class RasterBand(BaseModel):
    """A band of a multi-band raster output."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    band_id: typing.Union[int, str] = 1
    """1-based index or band description."""

    data_type: typing.Type = float
    units: typing.Union[pint.Unit, None]


class RasterOutput(FileOutput):
    """A multi-band raster output."""
    bands: list[RasterBand]


class NumberOutput(Output):
    units: typing.Union[pint.Unit, None] = None


class IntegerOutput(Output):
    pass


class StringOutput(Output):
    pass


_FIELD_OUTPUTS = (IntegerOutput, NumberOutput, StringOutput)


class VectorOutput(FileOutput):
    """A vector written by the model."""
    geometry_types: set = set()

    fields: list[Output]
    """Fields of the layer, by name."""

    @model_validator(mode='after')
    def check_field_types(self):
        for field in self.fields:
            if not isinstance(field, _FIELD_OUTPUTS):
                raise ValueError(f'Field {field.id} must be a value output')
        return self


class CSVOutput(FileOutput):
    """A table written by the model.

    A column id with square brackets stands for a family of columns, e.g.
    ``fc[YEAR]`` for one forest cover column per year.
    """
    columns: typing.Union[list[Output], None] = None

    index_col: typing.Union[str, None] = None

    @model_validator(mode='after')
    def check_columns(self):
        columns = self.columns or []
        for col in columns:
            if not isinstance(col, _FIELD_OUTPUTS):
                raise ValueError(f'Column {col.id} must be a value output')
        if (self.index_col is not None and
                self.index_col not in [col.id for col in columns]):
            raise ValueError(f'index_col {self.index_col} is not a column')
        return self


class ModelSpec(BaseModel):
    """Everything the command line and validation know about a model."""

    model_id: str
    """Identifier used on the command line, e.g. ``'forest_carbon'``."""

    model_title: str

    userguide: str
    """Name or URL of the model's documentation."""

    input_field_order: list[list[str]]
    """Groups of input ids in display order. Every input that is not hidden
    appears exactly once."""

    inputs: list[Input]

    outputs: list[Output]

    validate_spatial_overlap: typing.Union[bool, list[str]] = True
    """True to require that every spatial input overlaps the others, or the
    list of input ids to check."""

    different_projections_ok: bool = True
    """If True, overlap is checked after reprojecting to WGS84."""

    aliases: set = set()
    """Other names the model can be called by on the command line."""

    module_name: str
    """Module that defines ``execute``, e.g. ``forestcarbon.forest_carbon``."""

    @model_validator(mode='after')
    def check_inputs_in_field_order(self):
        ordered = [key for group in self.input_field_order for key in group]
        duplicates = {key for key in ordered if ordered.count(key) > 1}
        if duplicates:
            raise ValueError(
                f'Keys appear more than once in input_field_order: '
                f'{sorted(duplicates)}')
        hidden = {_input.id for _input in self.inputs if _input.hidden}
        if hidden & set(ordered):
            raise ValueError(
                f'Hidden inputs appear in input_field_order: '
                f'{sorted(hidden & set(ordered))}')
        if set(ordered) | hidden != {_input.id for _input in self.inputs}:
            raise ValueError(
                'Mismatch between keys in inputs and input_field_order')
        return self

    def get_input(self, key: str) -> Input:
        """Look up an input by id. Raises ``KeyError`` if there is none."""
        for _input in self.inputs:
            if _input.id == key:
                return _input
        raise KeyError(key)

    def get_output(self, key: str) -> Output:
        """Look up an output by id. Raises ``KeyError`` if there is none."""
        for _output in self.outputs:
            if _output.id == key:
                return _output
        raise KeyError(key)

    def to_json(self):
        """Serialize the model spec for the ``getspec`` command.

        Inputs are keyed by id under ``args`` and outputs by id under
        ``outputs``. Units are written as text.

        Returns:
            JSON string

        Raises:
            TypeError if the spec holds an object that can't be serialized.
        """

        def fallback_serializer(obj):
            if isinstance(obj, pint.Unit):
                return format_unit(obj)
            elif isinstance(obj, set):
                return sorted(obj)
            elif isinstance(obj, types.FunctionType):
                return str(obj)
            elif obj is int:
                return 'integer'
            elif obj is float:
                return 'number'
            elif isinstance(obj, BaseModel):
                as_dict = obj.model_dump()
                # ClassVars are not part of model_dump
                if hasattr(obj, 'type'):
                    as_dict['type'] = obj.type
                return as_dict
            raise TypeError(f'Cannot serialize {type(obj)}')

        spec_dict = self.__dict__.copy()
        spec_dict.pop('inputs')
        spec_dict['args'] = {_input.id: _input for _input in self.inputs}
        spec_dict['outputs'] = {
            _output.id: _output for _output in self.outputs}
        return json.dumps(
            spec_dict, default=fallback_serializer, ensure_ascii=False)

    def preprocess_inputs(self, input_values):
        """Preprocess raw args.

        Args:
            input_values (dict): raw args, as given to ``execute``

        Returns:
            dict with one entry per input of the spec. Inputs missing from
            ``input_values`` are preprocessed from ``None``; extra keys are
            dropped.
        """
        return {
            _input.id: _input.preprocess(input_values.get(_input.id, None))
            for _input in self.inputs}

    def outputs_to_be_created(self, args):
        """Ids of the outputs written for a set of preprocessed args."""
        return {
            output.id for output in self.outputs
            if bool(utils.evaluate_expression(
                expression=f'{output.created_if}', variable_map=args))}

    def create_output_directories(self, args):
        """Make the workspace subdirectories the outputs are written to."""
        outputs_to_be_created = self.outputs_to_be_created(args)
        for output in self.outputs:
            if output.id in outputs_to_be_created:
                os.makedirs(os.path.join(
                    args['workspace_dir'], os.path.dirname(output.path)),
                    exist_ok=True)

    def setup(self, args, taskgraph_key='taskgraph_cache'):
        """Common start of a model's ``execute``.

        Args:
            args (dict): raw args
            taskgraph_key (str): id of the output that holds the taskgraph
                database.

        Returns:
            ``(args, file_registry, graph)``: the preprocessed args, a
            ``FileRegistry`` of the outputs in the workspace, and a
            ``TaskGraph`` using ``args['n_workers']``.
        """
        args = self.preprocess_inputs(args)
        self.create_output_directories(args)
        file_registry = FileRegistry(
            outputs=self.outputs,
            workspace_dir=args['workspace_dir'],
            file_suffix=args['results_suffix'])
        graph = taskgraph.TaskGraph(
            os.path.dirname(file_registry[taskgraph_key]),
            n_workers=args['n_workers'])
        return args, file_registry, graph

    def execute(self, args, create_logfile=False, log_level=logging.NOTSET,
                save_file_registry=False, check_outputs=False):
        """Run the model's ``execute`` with GDAL exceptions enabled.

        Args:
            args (dict): raw args
            create_logfile (bool): if True, write everything logged during
                the run to a logfile in the workspace.
            log_level (int): threshold of the logfile.
            save_file_registry (bool): if True, write the returned registry
                to ``file_registry<suffix>.json`` in the workspace.
            check_outputs (bool): if True, compare the returned registry
                with the outputs expected from ``created_if``.

        Returns:
            the file registry dict returned by the model

        Raises:
            RuntimeError if ``check_outputs`` is True and the outputs differ
            from the expected ones.
        """
        if create_logfile:
            log_context = utils.prepare_workspace(
                args['workspace_dir'], model_id=self.model_id,
                logging_level=log_level)
        else:
            log_context = contextlib.nullcontext()

        with GDALUseExceptions(), log_context:
            # logged above CRITICAL so the args always reach the logfile
            LOGGER.log(
                100, 'Starting model with parameters: \n' +
                utils.format_args_dict(args, self.model_id))

            registry = importlib.import_module(self.module_name).execute(args)
            preprocessed_args = self.preprocess_inputs(args)

            if check_outputs:
                expected = self.outputs_to_be_created(preprocessed_args)
                created = set(registry.keys())
                if expected != created:
                    raise RuntimeError(
                        'The outputs created differ from the expected ones.\n'
                        f'Missing outputs: {expected - created}\n'
                        f'Extra outputs: {created - expected}')

            if save_file_registry:
                file_registry_path = os.path.join(
                    preprocessed_args['workspace_dir'],
                    f'file_registry{preprocessed_args["results_suffix"]}.json')
                with open(file_registry_path, 'w') as json_file:
                    json.dump(registry, json_file, indent=4)

            return registry


WORKSPACE = DirectoryInput(
    id="workspace_dir",
    name=gettext("workspace"),
    about=gettext(
        "Folder the results are written to. It is created if needed, and"
        " files from an earlier run with the same suffix are replaced."
    ),
    contents=[],
    must_exist=False,
    writable=True,
)
SUFFIX = ResultsSuffixInput(
    id="results_suffix",
    name=gettext("file suffix"),
    about=gettext(
        "Text added to the end of every output file name, to tell runs"
        " apart."
    ),
    required=False,
    regexp="[a-zA-Z0-9_-]*"
)
N_WORKERS = NWorkersInput(
    id="n_workers",
    name=gettext("taskgraph n_workers parameter"),
    about=gettext(
        "Number of taskgraph worker processes. -1 runs every task"
        " synchronously and 0 schedules tasks asynchronously in this"
        " process."
    ),
    required=False,
    hidden=True,
    expression="value >= -1"
)

TASKGRAPH_CACHE = FileOutput(
    id="taskgraph_cache",
    path="taskgraph_cache/taskgraph.db",
    about=gettext(
        "Record of completed tasks, used to skip work on a rerun."
    )
)

POLYGON = {'POLYGON'}
MULTIPOLYGON = {'MULTIPOLYGON'}
POLYGONS = POLYGON | MULTIPOLYGON


def format_unit(unit):
    """Describe a pint unit as short text, e.g. ``'t/ha'``.

    Raises:
        TypeError if ``unit`` is not ``None`` or a ``pint.Unit``.
    """
    if unit is None:
        return ''
    if not isinstance(unit, pint.Unit):
        raise TypeError(f'{unit!r} is a {type(unit)}, not a pint.Unit')

    custom_formats = {
        u.year_AD: '',
        u.year_since_2000: gettext('years since 2000'),
        u.dimensionless: gettext('unitless'),
    }
    if unit in custom_formats:
        return custom_formats[unit]
    return f'{unit:~P}'
