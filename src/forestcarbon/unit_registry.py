"""The pint unit registry shared by every forestcarbon module."""
import os

import pint

# calendar years and loss year codes are defined in unit_definitions.txt
u = pint.UnitRegistry(on_redefinition='ignore')
u.load_definitions(os.path.join(
    os.path.dirname(os.path.abspath(__file__)), 'unit_definitions.txt'))
