# StockFlow: inventory ledger, order fulfillment saga and collaborator resilience
