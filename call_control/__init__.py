"""
Call control: the telephony-facing side.

Telephony webhooks drive a per-call CallSession through PIN entry and
recording; a finished recording is handed to the generation job queue.
"""
