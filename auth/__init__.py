"""auth/ -- Authentication and authorization core of the mail-admin panel.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
Nothing in core/ imports from auth/. Callers (HTTP handlers, the CLI) import
from auth/, not the other way around.
"""
