"""Live slicing of R code courtesy of flowR."""

__version__ = "0.1.0"
