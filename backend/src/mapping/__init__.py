"""Product mapping: marketplace product/SKU to ERP item resolution."""
