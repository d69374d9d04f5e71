"""Stage transition table and the pipeline orchestrator.

Import the orchestrator from ``coursegen.pipeline.orchestrator`` directly;
this package is imported by the models and must stay free of service imports.
"""
