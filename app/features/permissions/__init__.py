"""
Dynamic permission feature module.

Group-based allow/deny permissions over a registry of console modules,
pages and components, layered on top of the static user roles.
"""
