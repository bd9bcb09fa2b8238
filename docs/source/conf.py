# Sphinx configuration for the apipe docs. Build with:
#
#     sphinx-build docs/source docs/build

import os
import sys

# apipe is a single module at the repository root.
sys.path.insert(0, os.path.abspath('../..'))

project = 'apipe'
copyright = "2024, the apipe authors"
author = "the apipe authors"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
]

templates_path = ['_templates']
exclude_patterns = []

# Document members in the order they appear in apipe.py, so that the pipe
# comes before the commands and errors it uses.
autodoc_default_options = {
    'member-order': 'bysource',
}

master_doc = 'index'
