# coding=UTF-8
"""Reading and writing the args of a model run.

A **parameter set** is a JSON file naming a model and its args::

    {
        "model_id": "forest_carbon",
        "args": {
            "workspace_dir": "workspace",
            "yr_str": 2000,
            ...
        }
    }

Relative paths in a parameter set are relative to the directory of the
parameter set file.

Every model logfile starts with the args of its run (see
``utils.format_args_dict``), so a logfile can be read back as a parameter
set too.
"""

import ast
import codecs
import collections
import json
import logging
import os
import re

from . import utils

LOGGER = logging.getLogger(__name__)
LOGFILE_ARGS_HEADER = 'Arguments for forestcarbon'

ParameterSet = collections.namedtuple('ParameterSet',
                                      'args model_id')

_BOOLEAN_STRINGS = {'true': True, 'false': False}


def _map_strings(value, func):
    """Apply ``func`` to every string nested in dicts and lists."""
    if isinstance(value, dict):
        return {key: _map_strings(item, func) for key, item in value.items()}
    if isinstance(value, list):
        return [_map_strings(item, func) for item in value]
    if isinstance(value, str):
        return func(value)
    return value


def build_parameter_set(args, model_id, paramset_path, relative=False):
    """Write a parameter set.

    Strings that are existing paths are written with ``/`` separators.

    Args:
        args (dict): the model args.
        model_id (string): id of the model the args are for.
        paramset_path (string): path of the JSON file to write.
        relative (bool): if True, paths are written relative to the
            directory of ``paramset_path``.

    Returns:
        the dict written to ``paramset_path``

    Raises:
        ValueError if a path can't be made relative, as happens on Windows
        when it is on another drive.
    """
    paramset_dir = os.path.dirname(paramset_path)

    def _format_path(value):
        # '' and other non-paths don't exist
        if not os.path.exists(value):
            return value
        path = os.path.normpath(value)
        if relative:
            if path == '.' or path == paramset_dir:
                return '.'
            try:
                path = os.path.relpath(path, paramset_dir)
            except ValueError:
                raise ValueError(
                    f'Cannot write {path} relative to {paramset_dir}. Save '
                    'the parameter set on the same drive or use absolute '
                    'paths.')
        return path.replace('\\', '/')

    parameter_data = {
        'model_id': model_id,
        'args': _map_strings(args, _format_path),
    }
    with codecs.open(paramset_path, 'w', encoding='UTF-8') as paramset_file:
        paramset_file.write(
            json.dumps(parameter_data, indent=4, sort_keys=True))
    return parameter_data


def extract_parameter_set(paramset_path):
    """Read a parameter set.

    ``"true"`` and ``"false"`` become booleans. Other strings are treated
    as paths: ``~`` and environment variables are expanded, and a relative
    path that exists next to the parameter set is made absolute. GDAL
    virtual paths are returned unchanged.

    Args:
        paramset_path (string): path of the JSON file.

    Returns:
        ``ParameterSet(args, model_id)``

    Raises:
        ValueError if the file has no ``model_id`` or no ``args``.
    """
    paramset_dir = os.path.dirname(os.path.abspath(paramset_path))
    with codecs.open(paramset_path, 'r', encoding='UTF-8') as paramset_file:
        read_params = json.loads(paramset_file.read())

    for key in ('model_id', 'args'):
        if key not in read_params:
            raise ValueError(
                f'Parameter set {paramset_path} is missing "{key}"')

    def _parse_string(value):
        if not value:
            return value
        if value.lower() in _BOOLEAN_STRINGS:
            return _BOOLEAN_STRINGS[value.lower()]
        if utils.is_gdal_virtual_path(value):
            return value

        expanded = os.path.expandvars(
            os.path.expanduser(os.path.normpath(value)))
        if os.path.isabs(expanded):
            return expanded
        candidate = os.path.abspath(os.path.join(paramset_dir, value))
        if os.path.exists(candidate):
            return candidate
        return value

    return ParameterSet(
        args=_map_strings(read_params['args'], _parse_string),
        model_id=read_params['model_id'])


def extract_parameters_from_logfile(logfile_path):
    """Read the args of a model run back from its logfile.

    The args are the ``key value`` lines between the line starting with
    ``"Arguments for forestcarbon <model_id> <version>:"`` and the next
    blank line. Values are parsed as python literals where possible and
    kept as strings otherwise.

    Args:
        logfile_path (string): path of the logfile.

    Returns:
        ``ParameterSet(args, model_id)``

    Raises:
        ValueError if the logfile holds no args.
    """
    model_id = None
    arg_lines = []
    with codecs.open(logfile_path, 'r', encoding='utf-8') as logfile:
        for line in logfile:
            line = line.strip()
            if model_id is None:
                if line.startswith(LOGFILE_ARGS_HEADER):
                    model_id = line.split(' ')[3]
            elif line:
                arg_lines.append(line)
            else:
                break

    if not arg_lines:
        raise ValueError(f'No arguments could be parsed from {logfile_path}')

    args_dict = {}
    for line in arg_lines:
        args_key = re.match(r'\w*', line).group(0)
        args_value = line[len(args_key):].strip()
        try:
            # numbers, booleans, None and lists
            args_value = ast.literal_eval(args_value)
        except (ValueError, SyntaxError):
            pass
        args_dict[args_key] = args_value
    return ParameterSet(args_dict, model_id)
