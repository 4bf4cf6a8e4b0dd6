"""Audio transcoding: engine adapter and compression state machine."""
