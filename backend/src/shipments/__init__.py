"""Shipment invoice and marketplace push pipeline."""
