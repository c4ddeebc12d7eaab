"""
Restricted/eligible zone calculation on top of the spatial store.
"""
