"""
PinPay Gateway
PIN rendezvous and gasless relay for EIP-3009 payment authorizations
"""

__version__ = "0.1.0"
