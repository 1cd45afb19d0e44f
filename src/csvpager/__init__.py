"""csvpager: paginate and filter remote CSV files behind a shared cache."""

__version__ = "0.1.0"
