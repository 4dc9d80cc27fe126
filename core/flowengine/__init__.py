"""
flowengine - DAG workflow execution, trigger scheduling and layered evaluation.

The engine runs a workflow graph of typed node executors per agent run,
decides when runs start (cron and polling triggers), traces every step, and
gates externally visible actions behind L1/L2/L3 evaluation.
"""

__version__ = "0.1.0"
