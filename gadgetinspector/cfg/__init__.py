"""Control-flow level helpers: stack heights and the taint call graph."""
