"""Prompt templates for the column mapper, statement extractor, receipt extractor and category agent."""

# --- Column mapping ---

COLUMN_MAPPING_PROMPT = """
You are a world-class bank statement analyst. You will be given the first rows of a spreadsheet exported by a bank
or credit card issuer. Work out which row holds the column headers and which column holds each logical field.

Spreadsheet preview ({total_rows} rows in total):
{preview}
{sign_instructions}{category_context}
Return ONLY a JSON object with this shape:
{{
  "header_row_index": number,            // 0-based index of the header row
  "field_mappings": {{
    "transaction_date": {{"column_index": number, "column_name": string}} | null,
    "posted_date": ... | null,
    "description": ... | null,
    "amount": ... | null,                  // single signed amount column
    "debit": ... | null,                   // money out, when debit and credit are separate columns
    "credit": ... | null,                  // money in, when debit and credit are separate columns
    "balance": ... | null,
    "category": ... | null,
    "merchant_name": ... | null,
    "reference_number": ... | null
  }},
  "conversions": [
    {{
      "field": string,                     // one of the field_mappings keys
      "type": "date" | "amount" | "description",
      "format": string | null,             // date format such as "DD/MM/YYYY" or "MM/DD/YY"
      "excel_serial": boolean | null,      // dates stored as spreadsheet serial numbers
      "reverse_sign": boolean | null,      // multiply amounts by -1
      "remove_symbols": boolean | null,    // strip currency symbols and thousands separators
      "handle_parentheses": boolean | null,// (100.00) means -100.00
      "trim": boolean | null,
      "remove_internal_codes": boolean | null
    }}
  ],
  "currency": string | null,               // ISO code such as USD, CAD, EUR
  "confidence": number                     // 0.0 to 1.0
}}

Rules:
- Column indices are 0-based and refer to the preview rows above.
- Map debit and credit only when the statement has separate columns for them; otherwise map amount.
- Give a date conversion for every date field you map. Use excel_serial when dates look like 45123.
- Output must be valid JSON, no comments, no trailing commas.
"""

CREDIT_CARD_SIGN_INSTRUCTIONS = """
CRITICAL INSTRUCTION: USER SELECTED "CREDIT CARD"
- In credit card statements a single "Amount" column usually shows PURCHASES (expenses) as POSITIVE numbers.
- REQUIRED ACTION: set "reverse_sign": true for the amount field (unless separate debit/credit columns exist).
- If separate "Debit" (purchase) and "Credit" (payment) columns exist, map them directly and do NOT set reverse_sign.
"""

BANK_ACCOUNT_SIGN_INSTRUCTIONS = """
CRITICAL INSTRUCTION: USER SELECTED "BANK ACCOUNT"
- In bank statements a single "Amount" column usually shows WITHDRAWALS (expenses) as NEGATIVE numbers.
- REQUIRED ACTION: set "reverse_sign": false for the amount field (standard accounting).
- If separate "Debit" and "Credit" columns exist, map them directly.
"""

UNKNOWN_SIGN_INSTRUCTIONS = """
CRITICAL INSTRUCTION: NO STATEMENT TYPE SELECTED - ANALYZE PATTERNS
- Statistical analysis of {total_rows} rows: {positive_percent}% of amounts are positive.
- Decision logic:
  * If >{reverse_above}% positive: likely a credit card or positive-expense bank statement, set "reverse_sign": true
  * If <{standard_below}% positive: likely a standard bank statement, set "reverse_sign": false
  * If mixed: standard accounting, set "reverse_sign": false
"""

CATEGORY_CONTEXT = """
User's financial context:
- User type: {usage_type}
- Income categories: {income_categories}
- Expense categories: {expense_categories}
Use these categories when mapping the "category" field if present in the data.
"""

# --- Statement extraction ---

STATEMENT_EXTRACTION_PROMPT = """
You are a financial document extraction expert. Extract all transaction data from this {document_label}.

{type_instructions}

For each transaction, extract:
- date: the transaction date (YYYY-MM-DD)
- post_date: the posting date if different (YYYY-MM-DD), else null
- description: the full description text
- merchant: a clean merchant name (remove payment processor prefixes like "PAYPAL *", location codes, etc.)
- amount: a plain number. NEGATIVE for purchases, debits, withdrawals and charges. POSITIVE for deposits,
  payments received, credits and refunds.

Rules:
- Extract ALL individual transactions, even across pages. Skip headers, totals and account summaries.
- Preserve the original order.
- Parse dates to YYYY-MM-DD (assume the statement year if not shown).
- Use plain numbers without currency symbols.

Return ONLY a JSON object:
{{
  "transactions": [
    {{"date": string, "post_date": string | null, "description": string, "merchant": string | null,
      "amount": number}}
  ],
  "currency": string | null,
  "confidence": number        // 0.0 to 1.0, how complete and accurate the extraction is
}}
{statement_text}"""

STATEMENT_TEXT_SECTION = """
Statement text:
{text}"""

VISION_EXTRACTION_SUFFIX = """
You are analyzing an IMAGE of the statement. The text may not be perfectly clear.
- Read carefully and extract what you can see.
- If text is blurry or unclear, make your best interpretation and lower the confidence score.
- Focus on the transaction table.
"""

CREDIT_CARD_TYPE_INSTRUCTIONS = """Statement type: CREDIT CARD
- Purchases, charges, interest and fees are NEGATIVE.
- Payments to the card and refunds are POSITIVE."""

BANK_ACCOUNT_TYPE_INSTRUCTIONS = """Statement type: BANK ACCOUNT
- Withdrawals, payments and transfers out are NEGATIVE.
- Deposits and transfers in are POSITIVE."""

UNKNOWN_TYPE_INSTRUCTIONS = """Statement type: UNKNOWN
Work out whether this is a bank account or credit card statement and apply the matching sign convention."""

# --- Receipts ---

RECEIPT_EXTRACTION_PROMPT = """
Extract information from this receipt image.

CRITICAL: read the ACTUAL merchant or business name printed on the receipt. Do NOT guess common names unless that
exact name appears on the receipt.

Required fields:
- date: transaction date (YYYY-MM-DD)
- total_amount: final total amount (number)

Preferred fields:
- merchant_name: business or merchant name shown on the receipt

Optional fields:
- currency: ISO currency code; assume {currency} if none is printed
- description: a short summary of what was bought

Return ONLY a JSON object. Use null if a field is not found.
{{"merchant_name": string | null, "date": string | null, "total_amount": number | null,
  "currency": string | null, "description": string | null}}
"""

# --- Categorization ---

CATEGORIZATION_PROMPT = """
You are a financial categorization assistant. Categorize the following transaction into one of the available
categories.

Transaction details:
- Merchant: {merchant}
- Description: {description}
- Amount: {amount}

Available categories: {categories}
{user_context}
Important context:
- "FINANCIAL", "FINANCE", "LOAN", "CREDIT", "PAYMENT PLAN", "INSTALLMENT" in the merchant or description typically
  indicate loan or debt payments, not software subscriptions.
- "DELL FINANCIAL", "APPLE FINANCIAL" and similar are financing services, not product purchases.
- "BILL PYMT", "PAYMENT", "AUTO PAY" often indicate bill payments or debt servicing.

Instructions:
1. Select the BEST matching category from the available list.
2. If none of the categories fit well, suggest a new category name and set is_new_category to true.
3. Provide a confidence score (0.0 to 1.0).

Return ONLY a JSON object:
{{"category_name": string, "confidence": number, "is_new_category": boolean}}
"""
