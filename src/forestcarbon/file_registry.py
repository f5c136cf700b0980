import os.path
import re


class FileRegistry:
    """
    Build and track the absolute paths of a model's outputs.

    A FileRegistry is created from a list of ``spec.Output`` objects, the
    workspace directory and an optional file suffix:

    ``file_registry = FileRegistry(MODEL_SPEC.outputs, workspace_dir, file_suffix)``

    Each output path is resolved inside the workspace, with the suffix added
    before the file extension. Index the registry by output id to get a path:

    ``file_registry['total_carbon']`` is the equivalent of
    ``os.path.join(workspace_dir, f'total_carbon{file_suffix}.tif')``

    Outputs whose id contains a bracketed variable, such as ``fc[YEAR]``,
    describe one file per value of the variable. Pass the value(s) after the
    id:

    ``file_registry['fc[YEAR]', 2005]`` is the equivalent of
    ``os.path.join(workspace_dir, f'intermediate_outputs/fc2005{file_suffix}.tif')``

    Every path handed out is recorded in the ``registry`` attribute, a
    (possibly nested) dictionary that ``execute`` functions return:

    .. code-block::

        {
            'total_carbon': '/.../workspace_dir/total_carbon_suffix.tif',
            'fc[YEAR]': {
                '2005': '/.../workspace_dir/intermediate_outputs/fc2005_suffix.tif'
            }
        }

    """

    def __init__(self, outputs, workspace_dir, file_suffix=None):
        self.registry = {}
        self._keys_to_paths = {}
        self._pattern_fields = {}

        for output in outputs:
            path, extension = os.path.splitext(output.path)
            if re.match(r'(.*)\[(\w+)\](.*)', path):
                self._pattern_fields[output.id] = [
                    field.lower() for field in re.findall(r'\[(\w+)\]', output.id)]

            full_path = os.path.abspath(os.path.join(
                workspace_dir, path + (file_suffix or '') + extension))
            if full_path in self._keys_to_paths.values():
                raise ValueError(f'Duplicate path: {full_path}')
            elif output.id in self._keys_to_paths:
                raise ValueError(f'Duplicate id: {output.id}')

            self._keys_to_paths[output.id] = full_path

    def __getitem__(self, keys):
        """Return the path for an output id, recording it in the registry.

        Args:
            keys (str | tuple(obj)): the output id, followed by one value
                per bracketed variable in the id if it is a pattern. Values
                must be castable to string.

        Returns:
            absolute path (string) for the given key(s)

        Raises:
            KeyError if the id is unknown or the wrong number of values
            is given.
        """
        if isinstance(keys, str):
            keys = (keys,)
        key, *field_values = keys
        field_values = [str(value) for value in field_values]
        if key not in self._keys_to_paths:
            raise KeyError(f'Key not found: {key}')

        path = self._keys_to_paths[key]
        if key in self._pattern_fields:
            fields = self._pattern_fields[key]
            if len(field_values) != len(fields):
                raise KeyError(
                    f'Expected exactly {len(fields)} field values but '
                    f'received {len(field_values)}')

            for field, val in zip(fields, field_values):
                path = path.replace(f'[{field.upper()}]', val)

            # nest one dict level per field; the innermost value is the path
            node = self.registry.setdefault(key, {})
            for value in field_values[:-1]:
                node = node.setdefault(value, {})
            node[field_values[-1]] = path

        else:
            if field_values:
                raise KeyError(
                    'Received field values for a key that has no fields')
            self.registry[key] = path
        return path
