"""HTTP gateway for the invoice approval core."""
