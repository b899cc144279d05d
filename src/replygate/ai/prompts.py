"""All prompt templates for classification, sentiment, moderation and reply writing."""

_CATEGORY_GUIDE = """CUSTOMER INTENT CATEGORIES:
- order_status: where is the order, when will it arrive, why hasn't it arrived
- promo_refund: money back, promo code problems, billing disputes
- order_cancellation: stop an order before it ships
- return_request: return or exchange a received product
- subscription_change: pause, resume, change contents or schedule of a subscription
- subscription_cancel: end a subscription or close the account permanently
- payment_issue: failed payments, payment method problems
- address_change: change the shipping address of an order
- product_question: product features, specifications, compatibility, usage
- escalation: threats, legal language, complex multi-issue complaints
- general: only when no specific intent is clear

PRIORITY:
- urgent: events tomorrow, damaged goods, safety issues
- high: delayed orders, upset customers, payment problems, billing disputes
- medium: standard requests, subscription changes
- low: simple questions, compliments, product info requests"""

CLASSIFICATION_PROMPT = """You are an expert customer service analyst. Identify the customer's underlying intent, not just keywords.

""" + _CATEGORY_GUIDE + """

Email Subject: {subject}
Email Content:
{body}

Respond in JSON only:
{{
  "category": "one category name from the list",
  "confidence": 0-100,
  "reasoning": "brief explanation of the customer's intent",
  "priority": "urgent | high | medium | low"
}}"""

GROUNDED_CLASSIFICATION_PROMPT = """You are an expert customer service analyst for a merchant. Decide the customer's intent using the merchant's own knowledge base first. Only rely on general reasoning where the knowledge base is silent.

""" + _CATEGORY_GUIDE + """

MERCHANT KNOWLEDGE (most relevant first):
{knowledge}

Email Subject: {subject}
Email Content:
{body}

Respond in JSON only:
{{
  "category": "one category name from the list",
  "confidence": 0-100,
  "reasoning": "brief explanation citing the knowledge used, if any",
  "priority": "urgent | high | medium | low"
}}"""

SENTIMENT_PROMPT = """Score the emotional polarity of this customer email.

TEXT:
{text}

Respond in JSON only:
{{
  "label": "POSITIVE | NEGATIVE | NEUTRAL | MIXED",
  "scores": {{"positive": 0-100, "negative": 0-100, "neutral": 0-100, "mixed": 0-100}},
  "confidence": 0-100
}}"""

MODERATION_PROMPT = """You review outgoing customer-support emails before they are sent on behalf of a merchant.

Block the email if it contains any of: offensive or discriminatory language, legal or medical advice, promises of compensation that are not stated as drafts, personal data about anyone other than the recipient, fabricated facts (prices, dates, policies) not present in the context, or content that contradicts the brand guidelines.

BRAND GUIDELINES:
{guidelines}

CONTEXT:
{context}

EMAIL:
{text}

Respond in JSON only:
{{
  "approved": true or false,
  "reason": "why it was blocked, empty when approved"
}}"""

REPLY_PROMPT = """You are drafting a customer-support reply for {company_name}. The draft may be reviewed before any action is taken, so never claim an action has already been completed; describe what CAN be done.

CUSTOMER EMOTION: {customer_emotion}
EMOTIONAL GUIDANCE: {emotional_guidance}
EMPATHY LEVEL {empathy_level}/5: {empathy_guidance}

ISSUE: {issue}
AVAILABLE ACTIONS: {actions}
ORDER NUMBER: {order_number}

KNOWLEDGE (answer ONLY from this; if empty, say a specialist will follow up):
{knowledge}

{greeting_instruction}
Do not add a signature, sign-off or agent name; it is appended automatically. Never use placeholders such as [ORDER_NUMBER].

ORIGINAL EMAIL:
Subject: {subject}
Content: {body}

Respond in JSON only:
{{
  "body": "the reply body",
  "confidence": 0-100
}}"""

EMOTIONAL_GUIDANCE = {
    "angry": "Start with a sincere apology, acknowledge their frustration is understandable, emphasize immediate action.",
    "frustrated": "Acknowledge their frustration, show understanding of their situation, focus on quick resolution.",
    "disappointed": "Validate their disappointment, show you understand expectations were not met, offer a hopeful solution.",
    "desperate": "Recognize the urgency, acknowledge their stress, give immediate reassurance and next steps.",
    "calm": "Be professional and helpful, focus on efficient problem-solving.",
}

EMPATHY_GUIDANCE = {
    1: "Minimal emotional language; facts and solutions, professional and direct.",
    2: "Some understanding without being emotional; use 'I understand' sparingly.",
    3: "Acknowledge feelings appropriately; balance emotion with solutions.",
    4: "Actively validate emotions; show genuine concern for their experience.",
    5: "Maximum emotional support; make the customer feel truly heard.",
}

ISSUE_DESCRIPTIONS = {
    "order_status": "Order delivery delay or tracking concerns",
    "promo_refund": "Promotional code or billing issue",
    "order_cancellation": "Request to cancel pending order",
    "return_request": "Product return or exchange request",
    "subscription_change": "Subscription billing or modification concern",
    "subscription_cancel": "Request to end a subscription",
    "payment_issue": "Payment processing problem",
    "address_change": "Shipping address update needed",
    "product_question": "Product information or compatibility question",
    "general": "General customer service inquiry",
}

AVAILABLE_ACTIONS = {
    "order_status": ["Check tracking information", "Provide delivery update"],
    "promo_refund": ["Validate promo code", "Process refund", "Apply manual discount"],
    "order_cancellation": ["Cancel order if possible", "Process refund", "Stop shipment"],
    "return_request": ["Generate return label", "Process exchange", "Initiate refund"],
    "subscription_change": ["Modify subscription", "Update billing", "Adjust delivery schedule"],
    "subscription_cancel": ["Cancel subscription", "Offer pause instead", "Confirm final billing date"],
    "payment_issue": ["Retry payment", "Update payment method", "Explain the charge"],
    "address_change": ["Update shipping address", "Confirm new delivery location"],
    "product_question": ["Provide product information", "Check compatibility", "Recommend alternatives"],
    "general": ["Provide customer assistance", "Address customer concern"],
}
