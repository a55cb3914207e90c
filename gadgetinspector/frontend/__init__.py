"""Class-file reading and classpath enumeration."""
