"""Prompt construction for LLM extraction providers.

Both LLM providers ask for the same nested JSON schema so their responses
map through one canonical converter (llm_response.to_extracted_invoice).
"""

RESPONSE_SCHEMA = """{
  "vendor": {
    "name": "string",
    "email": "string or null",
    "address": "string or null",
    "tax_id": "string or null"
  },
  "invoice_number": "string or null",
  "po_number": "string or null",
  "invoice_date": "YYYY-MM-DD or null",
  "due_date": "YYYY-MM-DD or null",
  "currency": "USD",
  "payment_terms": "string or null",
  "subtotal": 0.00,
  "tax_total": 0.00,
  "discount": 0.00,
  "total": 0.00,
  "line_items": [
    {"description": "string", "quantity": 0, "unit_price": 0.00, "total": 0.00}
  ],
  "confidence": {
    "overall": 0.95,
    "fields": {"invoice_number": 0.95, "total": 0.9},
    "notes": "Any concerns or low-confidence fields"
  }
}"""

SYSTEM_PROMPT = "You are an expert invoice data extraction assistant."

_EXAMPLE_INPUT = (
    "INVOICE #INV-12345\\nDate: 01/15/2024\\nDue: 02/14/2024\\nFrom: XYZ Suppliers Inc\\n"
    "Widgets 10 x $100.00 $1,000.00\\nSubtotal: $1,000.00\\nTax (10%): $100.00\\n"
    "Total: $1,100.00"
)
_EXAMPLE_OUTPUT = (
    '{"vendor": {"name": "XYZ Suppliers Inc", "email": null, "address": null, '
    '"tax_id": null}, "invoice_number": "INV-12345", "po_number": null, '
    '"invoice_date": "2024-01-15", "due_date": "2024-02-14", "currency": "USD", '
    '"payment_terms": null, "subtotal": 1000.00, "tax_total": 100.00, "discount": null, '
    '"total": 1100.00, "line_items": [{"description": "Widgets", "quantity": 10, '
    '"unit_price": 100.00, "total": 1000.00}], '
    '"confidence": {"overall": 0.95, "fields": {"total": 0.98}}}'
)


def build_extraction_prompt(
    ocr_text: str, with_image: bool = False, date_order: str = "MDY"
) -> str:
    """Build the extraction prompt with one worked example.

    Args:
        ocr_text: Raw OCR text of the invoice
        with_image: Whether the invoice image is attached to the request
        date_order: Component order to assume for ambiguous dates

    Returns:
        Formatted prompt string
    """
    source = (
        "Use BOTH the attached IMAGE and the OCR text below to extract accurate data."
        if with_image
        else "Use the OCR text below."
    )
    date_hint = "DD/MM/YYYY" if date_order == "DMY" else "MM/DD/YYYY"

    return f"""Analyze this invoice and extract ALL relevant information. {source}

Return JSON in exactly this format (use null for missing fields):
{RESPONSE_SCHEMA}

EXAMPLE:
Input: "{_EXAMPLE_INPUT}"
Output: {_EXAMPLE_OUTPUT}

INSTRUCTIONS:
- vendor is the company that SENT the invoice ("From:", "Seller:"), not "Bill To:"
- Dates must be YYYY-MM-DD; read ambiguous dates as {date_hint}
- Numbers only, no currency symbols; "1.234,56" means 1234.56
- confidence values are between 0 and 1
- Return ONLY valid JSON, no explanation

OCR TEXT:
{ocr_text}

OUTPUT:"""
