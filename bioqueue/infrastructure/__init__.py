"""Infrastructure Layer: Adapters for HTTP, configuration, credentials,
logging and the console.
"""
