"""HTTP routers for the chat and session-routing API."""
