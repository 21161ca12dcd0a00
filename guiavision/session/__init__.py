"""Live session core: capture, transport, playback scheduling and orchestration."""
