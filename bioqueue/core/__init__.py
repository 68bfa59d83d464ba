"""Core Application Layer: Orchestrates job submission, polling and extraction.

Connects the domain layer with the infrastructure layer through interfaces.
Contains the job kind registry, the pipeline services and the command handler.
"""
