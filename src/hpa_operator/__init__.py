"""HPA operator: derives HorizontalPodAutoscalers from Deployment annotations."""

__version__ = "0.3.0"
