"""
FormFlow - Template-Driven Document Generation & Distribution
=============================================================

Turns form submissions into rendered documents and fans them out to
independent delivery channels.

Scope:
- Key-value persistence over named collections, with one-time legacy migration
- Template repository (upload, placeholder extraction, selection)
- Interpolation engine and document conversion pipeline
- Settle-all distribution: download, email, cloud upload, server save
"""

__version__ = "1.0.0"
__product__ = "FormFlow"
