"""chromevm: orchestrates browser-automation sandboxes and runs scripts in them."""

__version__ = "0.1.0"
