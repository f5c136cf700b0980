"""init module for forestcarbon."""
from gettext import translation
import importlib.metadata
import logging
import os
import sys

LOGGER = logging.getLogger('forestcarbon')
LOGGER.addHandler(logging.NullHandler())
__all__ = ['set_locale', ]

try:
    __version__ = importlib.metadata.version(__name__)
except importlib.metadata.PackageNotFoundError:
    # package is not installed.  Log the exception for debugging.
    LOGGER.exception('Could not load forestcarbon version information')
    __version__ = 'unknown'

# location of our translation message catalog directory
LOCALE_DIR = os.path.join(
    os.path.dirname(os.path.abspath(__file__)), 'locales')
# all supported language codes, including the default English
LOCALES = sorted(set(
    (os.listdir(LOCALE_DIR) if os.path.isdir(LOCALE_DIR) else []) + ['en']))


def set_locale(locale_code):
    """Set the `gettext` attribute of forestcarbon.

    This is the locale that will be used for translation of user-facing
    messages, such as validation messages and input descriptions.

    Args:
        locale_code (str): ISO 639-1 locale code for a supported language

    Returns:
        None

    Raises:
        ValueError if the given locale code is not supported
    """
    if locale_code not in LOCALES:
        raise ValueError(
            f"Locale '{locale_code}' is not supported. "
            f"Supported locale codes are: {LOCALES}")
    this_module = sys.modules[__name__]
    gettext = translation(
        'messages',
        languages=[locale_code],
        localedir=LOCALE_DIR,
        # fall back to a NullTranslation, which returns the English messages
        fallback=True).gettext
    setattr(this_module, 'gettext', gettext)


# create forestcarbon.gettext, the default translation function
set_locale('en')
