#!/usr/bin/env python
"""
Run script for the equation plotter.
Starts the web server, or the interactive CLI when arguments are given.
"""

from eqplot.app import main

if __name__ == "__main__":
    main()
