"""ERP postings: VAT split, document builder, status machine and gateway."""
