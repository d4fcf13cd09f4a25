"""Overlay Assistant Meta information.
   Overlay Assistant is the control core of a live-transcription assistant:
   encrypted secrets, a crash-recoverable transcript and streamed answers.
"""
__title__ = 'overlay_assistant'
__description__ = (
   'Control core of a live-transcription assistant: encrypted secrets, '
   'durable transcript buffer and streaming LLM orchestration.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2026 Overlay Assistant Developers'
__author__ = 'Overlay Assistant Developers'
__author_email__ = 'dev@overlay-assistant.org'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/overlay-assistant/overlay-assistant-core'
