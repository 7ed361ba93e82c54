"""
shapenet package
~~~~~~~~~~~~~~~~

Feed-forward neural network trained online by backpropagation to recognize
procedurally generated shapes (triangle, rectangle, circle, sine curve).
Contains the network engine, the shape generator and the API server.
"""

__version__ = "1.0.0"
