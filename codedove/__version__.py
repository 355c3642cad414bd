"""Version information for codedove"""

__version__ = "0.1.0"
__author__ = "Robert Macrae"
__license__ = "AGPL-3.0-or-later"
