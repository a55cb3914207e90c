"""
gadgetinspector: static discovery of Java deserialization gadget chains

Reads a Java classpath (jars, a war, class directories and the JDK runtime)
and reports chains of method calls that carry attacker-controlled data from
a deserialization entry point into a dangerous operation:

1. class/method/field facts and the class hierarchy
2. per-method argument-to-return passthrough dataflow
3. a call graph whose edges carry argument-level taint
4. breadth-first search from sources to sinks

Sound only up to its heuristics: chains are leads for manual review.
"""

__version__ = "0.1.0"
