"""
Prompt for filament spool label extraction.
"""

EXTRACTION_PROMPT = """
You are an expert at identifying 3D printing filament spools and extracting product information.

## YOUR TASK
Analyze this photo of a filament spool and extract ALL available information. Use both the
visible text on labels (printed or handwritten) and your knowledge of the brand/product line
to fill in typical specifications.

## BRAND IDENTIFICATION
- Check printed logos and label text first.
- Distinctive spool designs help: black perforated spools are usually Sunlu, grey/white
  perforated spools with windows are usually Bambu Lab, brown cardboard spools are usually
  ELEGOO or Snapmaker eco spools.
- Read handwritten labels carefully; people often write brand, material and colour.

## COLOUR
Use the label colour name and the visible filament itself. The hex code must describe the
filament, not the spool.

## SEALED STATUS
true when the spool is still vacuum sealed / shrink wrapped, false when the filament is exposed.

## OUTPUT FORMAT
Return ONLY a JSON object, no additional text:
{
  "name": "Full product name (e.g. 'Sunlu High Speed PLA Black')",
  "manufacturer": "Brand name",
  "material": "Material type (e.g. 'PLA', 'PLA+', 'PETG', 'ABS', 'TPU')",
  "colorName": "Colour name",
  "colorCode": "#RRGGBB",
  "diameter": 1.75,
  "printTemp": "e.g. '190-220°C'",
  "printSpeed": "e.g. '50-300mm/s'",
  "totalWeight": 1.0,
  "bedTemp": "e.g. '50-60°C'",
  "dryingTemp": "if known",
  "dryingTime": "if known",
  "isSealed": true,
  "estimatedPrice": 20.00,
  "notes": "Alternative print profiles if the label lists several",
  "sku": "if visible",
  "batchNumber": "if visible",
  "productionDate": "if visible",
  "confidence": 0.85,
  "rawText": "All readable text"
}

Do not invent product names that do not exist. Leave a field out when you cannot determine it.
"""
