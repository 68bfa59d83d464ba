"""bioqueue: asynchronous job orchestration for remote biology-inference services.

Submits structure-prediction and molecule-generation jobs, paces and retries
outbound calls, follows the "202 Accepted + poll" protocol and extracts the
result artifact from loosely-shaped upstream payloads.
"""

__version__ = "0.1.0"
