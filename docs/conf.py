# Sphinx configuration for the condexec API reference
import os
import sys

sys.path.insert(0, os.path.abspath(".."))

from condexec import __version__  # noqa: E402

project = "condexec"
copyright = "2026, Trading System Team"
author = "Trading System Team"
version = release = __version__

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.viewcode",
    "sphinx_rtd_theme",
]

master_doc = "index"
exclude_patterns = ["_build"]

html_theme = "sphinx_rtd_theme"
html_theme_options = {
    "navigation_depth": 3,
    "prev_next_buttons_location": "bottom",
}

# Docstrings follow the Google style (Args / Returns / Raises)
napoleon_google_docstring = True
napoleon_numpy_docstring = False

autodoc_member_order = "bysource"
autodoc_typehints = "description"
autodoc_default_options = {
    "members": True,
    "show-inheritance": True,
}
