"""
Device-side agent components.
The session manager owns the broker connection; the driver in `main`
wires it to configuration and runs the periodic loops.
"""
