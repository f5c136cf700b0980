# coding=UTF-8
"""Single entry point for running forestcarbon models."""
import argparse
import importlib
import json
import logging
import multiprocessing
import pprint
import sys

from . import __version__
from . import datastack
from . import models

DEFAULT_EXIT_CODE = 1
DEFAULT_MODEL = 'forest_carbon'
LOGGER = logging.getLogger(__name__)


def build_model_list_table():
    """Format the models as aligned ``id (aliases) title`` lines for stdout."""
    model_ids = sorted(models.model_id_to_spec.keys())
    max_model_id_length = max(len(model_id) for model_id in model_ids)

    # room for the parentheses and a space
    max_alias_name_length = max(
        len(', '.join(model_spec.aliases))
        for model_spec in models.model_id_to_spec.values()) + 3
    template_string = '    {model_id} {aliases} {model_title}'
    strings = ['Available models:']
    for model_id in model_ids:
        model_spec = models.model_id_to_spec[model_id]
        alias_string = ', '.join(sorted(model_spec.aliases))
        if alias_string:
            alias_string = f'({alias_string})'

        strings.append(template_string.format(
            model_id=model_id.ljust(max_model_id_length),
            aliases=alias_string.ljust(max_alias_name_length),
            model_title=model_spec.model_title))
    return '\n'.join(strings) + '\n'


def build_model_list_json():
    """JSON object mapping each model title to its id and aliases."""
    json_object = {}
    for model_id, model_spec in models.model_id_to_spec.items():
        json_object[model_spec.model_title] = {
            'model_id': model_id,
            'aliases': sorted(model_spec.aliases)
        }

    return json.dumps(json_object)


class SelectModelAction(argparse.Action):
    """Resolve a model argument to a model id.

    An exact model id wins, then a prefix of exactly one model id, then an
    alias. Anything else exits the parser with status 1.
    """
    def __call__(self, parser, namespace, values, option_string=None):
        known_models = sorted(models.model_id_to_spec.keys())

        matching_models = [model for model in known_models if
                           model.startswith(values)]

        exact_matches = [model for model in known_models if
                         model == values]

        if len(exact_matches) == 1:
            model_id = exact_matches[0]
        elif len(matching_models) == 1:
            model_id = matching_models[0]
        elif values in models.model_alias_to_id:
            model_id = models.model_alias_to_id[values]
        elif len(matching_models) == 0:
            parser.exit(status=1, message=(
                f"Error: '{values}' not a known model"))
        else:
            parser.exit(
                status=1,
                message=(
                    f"Model string '{values}' is ambiguous:\n"
                    f"    {' '.join(matching_models)}"))
        setattr(namespace, self.dest, model_id)


def _import_model(model_id):
    return importlib.import_module(models.model_id_to_pyname[model_id])


def main(user_args=None):
    """CLI entry point for validating and running models.

    Models are run in headless mode from a parameter set, a JSON file of the
    model id and its args.
    """
    parser = argparse.ArgumentParser(
        description=(
            'Annual forest cover, forest loss, carbon stock and CO2 emissions '
            'statistics for regions of interest, from the Global Forest '
            'Change tree cover and loss year rasters and an above-ground '
            'biomass raster.'),
        prog='forestcarbon'
    )
    parser.add_argument('--version', action='version',
                        version=__version__)
    verbosity_group = parser.add_mutually_exclusive_group()
    verbosity_group.add_argument(
        '-v', '--verbose', dest='verbosity', default=0, action='count',
        help=('Increase verbosity.  Affects how much logging is printed to '
              'the console and how much is written to the logfile.'))
    verbosity_group.add_argument(
        '--debug', dest='log_level', default=logging.ERROR,
        action='store_const', const=logging.DEBUG,
        help='Enable debug logging. Alias for -vvvv')

    subparsers = parser.add_subparsers(dest='subcommand')

    listmodels_subparser = subparsers.add_parser(
        'list', help='List the available models')
    listmodels_subparser.add_argument(
        '--json', action='store_true', help='Write output as a JSON object')

    run_subparser = subparsers.add_parser(
        'run', help='Run a model from a parameter set')
    run_subparser.add_argument(
        '-d', '--datastack', required=True,
        help='Run the model with this JSON parameter set.')
    run_subparser.add_argument(
        '-w', '--workspace', default=None,
        help=('The workspace in which outputs will be saved. Overrides the '
              'workspace_dir of the parameter set.'))

    validate_subparser = subparsers.add_parser(
        'validate', help='Validate the parameters of a parameter set')
    validate_subparser.add_argument(
        '--json', action='store_true', help='Write output as a JSON object')
    validate_subparser.add_argument(
        'datastack', help='Validate the model args of this JSON parameter set.')

    getspec_subparser = subparsers.add_parser(
        'getspec', help='Get the specification of a model.')
    getspec_subparser.add_argument(
        '--json', action='store_true', help='Write output as a JSON object')
    getspec_subparser.add_argument(
        'model', action=SelectModelAction, nargs='?', default=DEFAULT_MODEL,
        help=('The model for which the spec should be fetched.  Use '
              '"forestcarbon list" to list the available models.'))

    args = parser.parse_args(user_args)

    root_logger = logging.getLogger()
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt='%(asctime)s %(name)-18s %(levelname)-8s %(message)s',
        datefmt='%m/%d/%Y %H:%M:%S ')
    handler.setFormatter(formatter)

    # each -v lowers the console threshold by one level from ERROR
    log_level = min(args.log_level, logging.ERROR - (args.verbosity*10))
    handler.setLevel(max(log_level, logging.DEBUG))
    root_logger.addHandler(handler)
    LOGGER.info(f'Setting handler log level to {log_level}')

    # the console handler level does the filtering
    logging.getLogger('forestcarbon').setLevel(logging.DEBUG)

    if args.subcommand is None:
        parser.print_help()
        parser.exit(DEFAULT_EXIT_CODE)

    if args.subcommand == 'list':
        if args.json:
            message = build_model_list_json()
        else:
            message = build_model_list_table()

        sys.stdout.write(message)
        parser.exit()

    if args.subcommand == 'validate':
        try:
            parsed_datastack = datastack.extract_parameter_set(args.datastack)
        except Exception as error:
            parser.exit(
                1, "Error when parsing JSON parameter set:\n    " + str(error))

        if parsed_datastack.model_id not in models.model_id_to_pyname:
            parser.exit(
                1, f"Error: '{parsed_datastack.model_id}' not a known model")
        model_module = _import_model(parsed_datastack.model_id)

        try:
            validation_result = model_module.validate(parsed_datastack.args)
        except Exception as error:
            LOGGER.exception('Validation failed')
            parser.exit(
                1, 'Parameter set could not be validated:\n    ' + str(error))

        # invalid args are a result, not a failure of the command
        if args.json:
            message = json.dumps({
                'validation_results': validation_result})
        else:
            message = pprint.pformat(validation_result)

        sys.stdout.write(message)
        parser.exit(0)

    if args.subcommand == 'getspec':
        model_spec = models.model_id_to_spec[args.model]

        if args.json:
            message = model_spec.to_json()
        else:
            message = pprint.pformat(json.loads(model_spec.to_json()))
        sys.stdout.write(message)
        parser.exit(0)

    if args.subcommand == 'run':
        try:
            parsed_datastack = datastack.extract_parameter_set(args.datastack)
        except Exception as error:
            parser.exit(
                1, "Error when parsing JSON parameter set:\n    " + str(error))

        if args.workspace:
            parsed_datastack.args['workspace_dir'] = args.workspace
        elif parsed_datastack.args.get('workspace_dir') in ('', None):
            parser.exit(
                1, ('Workspace must be defined at the command line '
                    'or in the parameter set'))

        if parsed_datastack.model_id not in models.model_id_to_spec:
            parser.exit(
                1, f"Error: '{parsed_datastack.model_id}' not a known model")
        model_spec = models.model_id_to_spec[parsed_datastack.model_id]
        LOGGER.info(f'Running model {model_spec.model_id}')

        # args are checked by the model's own check_configuration
        model_spec.execute(
            parsed_datastack.args,
            create_logfile=True,
            log_level=log_level,
            save_file_registry=True)
        parser.exit(0)


if __name__ == '__main__':
    multiprocessing.freeze_support()
    main()
