"""
calphenix

Offline calibration of the PHENIX sigmalized residuals and EMCal timing:
iterative curve fits over every detector and kinematic bin, written out as
parameter tables.
"""

__version__ = "0.1.0"
