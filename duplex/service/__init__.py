"""Entry points for the coordinator and worker contexts."""
