"""DNS listeners, the resolution pipeline and upstream transports."""
