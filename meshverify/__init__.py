"""
meshverify - end-to-end verification harness for a mesh-VPN control plane.

Provisions a control plane and a fleet of clients as throwaway Docker
containers, joins the fleet to the overlay, and verifies addressing,
membership and direct all-pairs connectivity.
"""

__version__ = "0.1.0"
