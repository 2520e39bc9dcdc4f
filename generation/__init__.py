"""
Generation side: job queue, pipeline and notification fan-out.

A completed recording becomes a Job; the JobQueueProcessor runs the
GenerationPipeline for one job at a time, retrying failed attempts, and the
NotificationFanout tells realtime subscribers (and, on terminal outcomes, the
caller by SMS) how it went.
"""
