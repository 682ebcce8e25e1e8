"""BitMedic: patient lookups relayed over a peer-to-peer mesh.

Devices without internet access search and create patient records by
broadcasting commands on the mesh; any online peer acts as a gateway,
calls the remote service and relays the answer back.
"""

__version__ = "0.1.0"
