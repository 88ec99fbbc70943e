"""
Larksuite bridge core

- bridge: webhook event routing and agent gateway exchanges
"""
