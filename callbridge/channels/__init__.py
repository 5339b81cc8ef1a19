"""Media transports bridged to the realtime AI."""
