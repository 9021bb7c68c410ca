"""Listing and detail collection from the catalog portal."""
