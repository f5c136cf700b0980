import importlib
import pkgutil

import forestcarbon


def is_model(module):
    """Check if a python module is a forestcarbon model.

    Args:
        module (module): python module to check

    Returns:
        True if the module has a ``MODEL_SPEC`` attribute and ``execute``
        and ``validate`` functions, False otherwise
    """
    return (
        hasattr(module, "execute") and callable(module.execute) and
        hasattr(module, "validate") and callable(module.validate) and
        hasattr(module, "MODEL_SPEC"))


# pyname: importable name e.g. forestcarbon.forest_carbon
# model id: identifier e.g. forest_carbon
pyname_to_module = {}
for _, _name, _ispkg in pkgutil.iter_modules(forestcarbon.__path__):
    if _name in {'__main__', 'cli', 'datastack', 'models'}:
        continue  # avoid a circular import
    _module = importlib.import_module(f'forestcarbon.{_name}')
    if is_model(_module):
        pyname_to_module[f'forestcarbon.{_name}'] = _module

model_id_to_pyname = {}
pyname_to_model_id = {}
model_id_to_spec = {}
model_alias_to_id = {}
for _pyname, _model in pyname_to_module.items():
    model_id_to_pyname[_model.MODEL_SPEC.model_id] = _pyname
    pyname_to_model_id[_pyname] = _model.MODEL_SPEC.model_id
    model_id_to_spec[_model.MODEL_SPEC.model_id] = _model.MODEL_SPEC
    for _alias in _model.MODEL_SPEC.aliases:
        model_alias_to_id[_alias] = _model.MODEL_SPEC.model_id
