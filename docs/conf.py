# Sphinx configuration for the Coworks backend API reference.
import os
import sys

sys.path.insert(0, os.path.abspath('..'))

# Skip schema creation while autodoc imports the service modules
os.environ['DOCS_BUILD'] = '1'
os.environ.setdefault('DATABASE_URL', 'sqlite://')

# -- Project information -----------------------------------------------------
project = 'Coworks Backend'
copyright = '2026, Coworks contributors'
author = 'Coworks contributors'
release = '1.0.0'

# -- General configuration ---------------------------------------------------
extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.viewcode',
]

autodoc_default_options = {
    'members': True,
    'show-inheritance': False,
}
autodoc_member_order = 'bysource'

master_doc = 'index'
templates_path = ['_templates']
exclude_patterns = ['_build', 'Thumbs.db', '.DS_Store']

# -- Options for HTML output -------------------------------------------------
html_theme = 'sphinx_rtd_theme'
html_static_path = []
