"""callscribe: live speaker-attributed transcription with switchable providers."""
