"""Library Circulation - Utilities Package

Helpers shared by the API and CLI:
- Payload parsing and text normalization (validators.py)
- CLI output rendering (ui_helpers.py)
"""
